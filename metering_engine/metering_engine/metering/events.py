"""Usage event definitions for the metering pipeline.

Each event represents a single billable action taken by a tenant.  Events
are appended to the ``usage_events`` table by the recorder, mirrored into
fast per-period counters, and rolled up into ``usage_aggregates`` by the
aggregator.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class UsageCategory(str, Enum):
    """Billing categories a usage event can belong to."""

    STORAGE = "storage"
    PROCESSING = "processing"
    EMBEDDINGS = "embeddings"
    SEARCH = "search"
    AI = "ai"


class UsageEventType(str, Enum):
    """Event types emitted by the recorder's convenience entry points."""

    FILE_UPLOAD = "file_upload"
    MODEL_INPUT_TOKENS = "model_input_tokens"
    MODEL_OUTPUT_TOKENS = "model_output_tokens"
    CACHE_WRITE_TOKENS = "cache_write_tokens"
    CACHE_READ_TOKENS = "cache_read_tokens"
    TOOL_EXECUTED = "tool_executed"
    DOCUMENT_EXTRACTION = "document_extraction"
    DOCUMENT_OCR = "document_ocr"
    DOCX_EXTRACTION = "docx_extraction"
    EXCEL_EXTRACTION = "excel_extraction"
    TEXT_EXTRACTION = "text_extraction"
    TEXT_EMBEDDING = "text_embedding"
    IMAGE_EMBEDDING = "image_embedding"
    VECTOR_SEARCH = "vector_search"
    HYBRID_SEARCH = "hybrid_search"


class UsageUnit(str, Enum):
    """Units a usage quantity is measured in."""

    BYTES = "bytes"
    TOKENS = "tokens"
    MILLISECONDS = "milliseconds"
    PAGES = "pages"
    IMAGES = "images"


class CounterMetric(str, Enum):
    """Names of the fast per-period usage counters."""

    AI_TOKENS = "ai_tokens"
    AI_CALLS = "ai_calls"
    STORAGE_BYTES = "storage_bytes"
    TOOL_CALLS = "tool_calls"
    PAGES_PROCESSED = "pages_processed"
    OCR_PAGES = "ocr_pages"
    EMBEDDING_TOKENS = "embedding_tokens"
    IMAGE_EMBEDDINGS = "image_embeddings"
    SEARCHES = "searches"
    SEARCH_EMBEDDING_TOKENS = "search_embedding_tokens"


class UsageEvent(BaseModel):
    """A single usage event for metering.

    Attributes
    ----------
    event_id:
        Unique identifier for this event (UUID string).
    tenant_id:
        The tenant that generated this event.
    resource_id:
        Session or resource the usage is attributed to.  Always a UUID string
        once the event has passed through the recorder.
    category:
        Billing category of the event.
    event_type:
        Free-form event type, normally a :class:`UsageEventType` value.
    quantity:
        Number of units consumed (tokens, bytes, pages, ...).
    unit:
        Unit of ``quantity``.
    cost:
        Cost in USD computed from the pricing table.
    metadata:
        Additional context (model name, processor type, ...).
    timestamp:
        When the event occurred (UTC).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    resource_id: str
    category: UsageCategory
    event_type: str
    quantity: int = Field(default=0, ge=0)
    unit: str
    cost: float = Field(default=0.0, ge=0.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
