"""Fire-and-forget recorder for billable operations.

The :class:`UsageRecorder` turns a description of a billable operation into
one or more rows in ``usage_events`` and bumps the matching fast counters.
It never raises: every failure is logged with the tenant and event context
and the call returns normally, because a broken metering path must not
break the operation being metered.

Callers on the request path should not await recording directly.  Wrap the
call in :meth:`UsageRecorder.submit`, which spawns a detached task, and call
:meth:`UsageRecorder.drain` during shutdown so in-flight writes get a chance
to finish.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering_engine.metering.counters import CounterStore, counter_key
from metering_engine.metering.events import (
    CounterMetric,
    UsageCategory,
    UsageEvent,
    UsageEventType,
    UsageUnit,
)
from metering_engine.pricing import (
    UNIT_COSTS,
    calculate_embedding_cost,
    calculate_extraction_cost,
    calculate_search_cost,
    calculate_storage_cost,
)
from metering_engine.state.repository import QuotaRepository, UsageEventRepository

logger = logging.getLogger(__name__)

DEFAULT_COUNTER_TTL_SECONDS = 90 * 24 * 60 * 60

_EXTRACTION_EVENT_TYPES: dict[str, UsageEventType] = {
    "docx": UsageEventType.DOCX_EXTRACTION,
    "excel": UsageEventType.EXCEL_EXTRACTION,
    "text": UsageEventType.TEXT_EXTRACTION,
}


def normalise_resource_id(resource_id: str, metadata: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
    """Return a UUID-shaped resource id and the metadata to store with it.

    A value that is not a UUID is replaced by a fresh uuid4; the original is
    kept in ``metadata["original_session_id"]`` and the substitution is
    flagged with ``metadata["is_generated_session_uuid"]``.
    """
    meta = dict(metadata or {})
    try:
        return str(uuid.UUID(str(resource_id))), meta
    except (ValueError, TypeError, AttributeError):
        generated = str(uuid.uuid4())
        meta["original_session_id"] = resource_id
        meta["is_generated_session_uuid"] = True
        logger.warning(
            "Non-UUID resource id %r replaced with generated id %s",
            resource_id,
            generated,
        )
        return generated, meta


class UsageRecorder:
    """Records usage events and increments fast counters.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each write runs in.  Every recorded event
        gets its own short transaction so that it never shares fate with the
        caller's request transaction.
    counters:
        Fast counter store.  ``None`` disables counter increments.
    counter_ttl_seconds:
        TTL applied the first time a per-period counter is created.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        counters: CounterStore | None = None,
        *,
        counter_ttl_seconds: int = DEFAULT_COUNTER_TTL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._counters = counters
        self._counter_ttl = counter_ttl_seconds
        self._pending: set[asyncio.Task[None]] = set()

    # -- Detached execution --------------------------------------------------

    @property
    def pending_count(self) -> int:
        """Number of submitted recordings still running."""
        return len(self._pending)

    def submit(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        """Run a recording coroutine as a detached task.

        The returned task is tracked until it finishes so that
        :meth:`drain` can wait for it.  Must be called from a running
        event loop.
        """
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: float = 5.0) -> int:
        """Wait up to *timeout* seconds for submitted recordings to finish.

        Recordings still running after the timeout are cancelled and their
        usage is lost (it is also absent from the event log, so aggregation
        stays consistent).

        Returns
        -------
        int
            Number of recordings that were cancelled.
        """
        if not self._pending:
            return 0
        pending = set(self._pending)
        logger.info("Draining %d in-flight usage recordings", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "Abandoned %d usage recordings after %.1fs drain timeout",
                len(still_running),
                timeout,
            )
        return len(still_running)

    # -- Generic primitive ---------------------------------------------------

    async def record(
        self,
        tenant_id: str,
        resource_id: str,
        category: UsageCategory | str,
        event_type: UsageEventType | str,
        quantity: int,
        unit: UsageUnit | str,
        metadata: dict[str, Any] | None = None,
        *,
        cost: float = 0.0,
    ) -> None:
        """Append one usage event.  Never raises."""
        await self._record_with_usage(
            tenant_id,
            resource_id,
            category,
            event_type,
            quantity,
            unit,
            metadata,
            cost=cost,
        )

    async def _record_with_usage(
        self,
        tenant_id: str,
        resource_id: str,
        category: UsageCategory | str,
        event_type: UsageEventType | str,
        quantity: int,
        unit: UsageUnit | str,
        metadata: dict[str, Any] | None,
        *,
        cost: float,
        quota_usage: dict[str, int] | None = None,
    ) -> None:
        """Insert the event and, optionally, bump the quota running counters."""
        try:
            safe_id, meta = normalise_resource_id(resource_id, metadata)
            event = UsageEvent(
                tenant_id=tenant_id,
                resource_id=safe_id,
                category=UsageCategory(category),
                event_type=_value(event_type),
                quantity=quantity,
                unit=_value(unit),
                cost=cost,
                metadata=meta,
            )
        except Exception:
            logger.error(
                "Rejected usage event tenant=%s category=%s type=%s quantity=%s (non-blocking)",
                tenant_id,
                category,
                event_type,
                quantity,
                exc_info=True,
                extra={"tenant_id": tenant_id},
            )
            return

        try:
            async with self._session_factory() as session:
                await UsageEventRepository(session, tenant_id=tenant_id).insert(event)
                if quota_usage:
                    await QuotaRepository(session, tenant_id=tenant_id).add_usage(**quota_usage)
                await session.commit()
            logger.debug(
                "Recorded usage tenant=%s type=%s quantity=%d cost=%.8f",
                tenant_id,
                event.event_type,
                event.quantity,
                event.cost,
                extra={"tenant_id": tenant_id},
            )
        except Exception:
            logger.error(
                "Failed to record usage event tenant=%s type=%s quantity=%d (non-blocking)",
                tenant_id,
                event.event_type,
                event.quantity,
                exc_info=True,
                extra={"tenant_id": tenant_id},
            )

    async def _increment(self, tenant_id: str, metric: CounterMetric, amount: int) -> None:
        """Bump one fast counter, setting its TTL on first creation.  Never raises."""
        if self._counters is None or amount <= 0:
            return
        key = counter_key(tenant_id, metric.value)
        try:
            new_value = await self._counters.increment(key, amount)
            if new_value == amount:
                await self._counters.expire(key, self._counter_ttl)
        except Exception:
            logger.warning(
                "Failed to increment usage counter key=%s amount=%d (non-blocking)",
                key,
                amount,
                exc_info=True,
                extra={"tenant_id": tenant_id},
            )

    # -- Convenience entry points ---------------------------------------------

    async def record_file_upload(
        self,
        tenant_id: str,
        resource_id: str,
        size_bytes: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an uploaded file against the tenant's storage."""
        await self._record_with_usage(
            tenant_id,
            resource_id,
            UsageCategory.STORAGE,
            UsageEventType.FILE_UPLOAD,
            size_bytes,
            UsageUnit.BYTES,
            metadata,
            cost=calculate_storage_cost(size_bytes),
            quota_usage={"storage_bytes": size_bytes},
        )
        await self._increment(tenant_id, CounterMetric.STORAGE_BYTES, size_bytes)

    async def record_model_usage(
        self,
        tenant_id: str,
        session_id: str,
        input_tokens: int,
        output_tokens: int,
        *,
        model: str,
        cache_write_tokens: int = 0,
        cache_read_tokens: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record one model call.

        Emits separate input and output token events, plus cache write and
        cache read events when those counts are non-zero.  The ``ai_tokens``
        counter grows by input + output tokens and ``ai_calls`` by one.
        """
        base_meta = {**(metadata or {}), "model": model}
        token_events = [
            (UsageEventType.MODEL_INPUT_TOKENS, input_tokens, "model_input_token", "input"),
            (UsageEventType.MODEL_OUTPUT_TOKENS, output_tokens, "model_output_token", "output"),
        ]
        if cache_write_tokens > 0:
            token_events.append(
                (UsageEventType.CACHE_WRITE_TOKENS, cache_write_tokens, "cache_write_token", "cache_write")
            )
        if cache_read_tokens > 0:
            token_events.append(
                (UsageEventType.CACHE_READ_TOKENS, cache_read_tokens, "cache_read_token", "cache_read")
            )

        billed_tokens = input_tokens + output_tokens
        for index, (event_type, tokens, pricing_unit, token_type) in enumerate(token_events):
            await self._record_with_usage(
                tenant_id,
                session_id,
                UsageCategory.AI,
                event_type,
                tokens,
                UsageUnit.TOKENS,
                {**base_meta, "token_type": token_type},
                cost=tokens * UNIT_COSTS[pricing_unit],
                # Running counters move once per call, with the input event.
                quota_usage={"tokens": billed_tokens, "api_calls": 1} if index == 0 else None,
            )

        await self._increment(tenant_id, CounterMetric.AI_TOKENS, billed_tokens)
        await self._increment(tenant_id, CounterMetric.AI_CALLS, 1)

    async def record_tool_execution(
        self,
        tenant_id: str,
        session_id: str,
        tool_name: str,
        duration_ms: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a tool invocation.  Tools carry no direct cost."""
        await self._record_with_usage(
            tenant_id,
            session_id,
            UsageCategory.AI,
            UsageEventType.TOOL_EXECUTED,
            duration_ms,
            UsageUnit.MILLISECONDS,
            {**(metadata or {}), "tool_name": tool_name},
            cost=0.0,
        )
        await self._increment(tenant_id, CounterMetric.TOOL_CALLS, 1)

    async def record_text_extraction(
        self,
        tenant_id: str,
        resource_id: str,
        page_count: int,
        *,
        processor_type: str = "pdf",
        used_ocr: bool = False,
        sheet_count: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record document text extraction.

        ``processor_type`` selects the event type and pricing: ``pdf``
        (``document_extraction`` or ``document_ocr``), ``docx``, ``excel``
        (billed per sheet) or ``text`` (free).  Unknown processors are
        treated as PDF.
        """
        if processor_type == "pdf" or processor_type not in _EXTRACTION_EVENT_TYPES:
            event_type = UsageEventType.DOCUMENT_OCR if used_ocr else UsageEventType.DOCUMENT_EXTRACTION
        else:
            event_type = _EXTRACTION_EVENT_TYPES[processor_type]
        cost = calculate_extraction_cost(
            processor_type,
            page_count,
            used_ocr=used_ocr,
            sheet_count=sheet_count,
        )
        await self._record_with_usage(
            tenant_id,
            resource_id,
            UsageCategory.PROCESSING,
            event_type,
            page_count,
            UsageUnit.PAGES,
            {**(metadata or {}), "processor_type": processor_type, "ocr_used": used_ocr},
            cost=cost,
        )
        await self._increment(tenant_id, CounterMetric.PAGES_PROCESSED, page_count)
        if used_ocr:
            await self._increment(tenant_id, CounterMetric.OCR_PAGES, page_count)

    async def record_embedding(
        self,
        tenant_id: str,
        resource_id: str,
        *,
        embedding_type: str = "text",
        token_count: int = 0,
        image_count: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record text (per token) or image (per image) embedding generation."""
        cost = calculate_embedding_cost(embedding_type, token_count=token_count, image_count=image_count)
        meta = {**(metadata or {}), "embedding_type": embedding_type}
        if embedding_type == "image":
            await self._record_with_usage(
                tenant_id,
                resource_id,
                UsageCategory.EMBEDDINGS,
                UsageEventType.IMAGE_EMBEDDING,
                image_count,
                UsageUnit.IMAGES,
                meta,
                cost=cost,
            )
            await self._increment(tenant_id, CounterMetric.IMAGE_EMBEDDINGS, image_count)
            return

        await self._record_with_usage(
            tenant_id,
            resource_id,
            UsageCategory.EMBEDDINGS,
            UsageEventType.TEXT_EMBEDDING,
            token_count,
            UsageUnit.TOKENS,
            meta,
            cost=cost,
        )
        await self._increment(tenant_id, CounterMetric.EMBEDDING_TOKENS, token_count)

    async def record_vector_search(
        self,
        tenant_id: str,
        query_tokens: int,
        *,
        search_type: str = "vector",
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record one search query plus the tokens used to embed it.

        When *session_id* is omitted, ``metadata["session_id"]`` is used, and
        failing that a fresh id is generated.
        """
        meta = {**(metadata or {}), "search_type": search_type}
        resource_id = session_id or meta.get("session_id") or str(uuid.uuid4())
        event_type = UsageEventType.HYBRID_SEARCH if search_type == "hybrid" else UsageEventType.VECTOR_SEARCH
        await self._record_with_usage(
            tenant_id,
            str(resource_id),
            UsageCategory.SEARCH,
            event_type,
            query_tokens,
            UsageUnit.TOKENS,
            meta,
            cost=calculate_search_cost(search_type, query_tokens),
        )
        await self._increment(tenant_id, CounterMetric.SEARCHES, 1)
        await self._increment(tenant_id, CounterMetric.SEARCH_EMBEDDING_TOKENS, query_tokens)


def _value(item: Any) -> str:
    """Return the ``.value`` of an enum member, or the item itself as a string."""
    return str(getattr(item, "value", item))
