"""Pricing table for metered operations and subscription plans.

Pure data and arithmetic -- no state, no I/O.  Every cost the recorder
attaches to a usage event and every overage figure the billing engine
produces is derived from the constants in this module.

Model token pricing follows Anthropic Claude list prices:
    Input:  $3.00  / 1M tokens
    Output: $15.00 / 1M tokens
PAYG overage rates are the unit cost with a 25% margin applied.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024
_GIB = 1024 * 1024 * 1024

# ---------------------------------------------------------------------------
# Unit costs (USD per unit)
# ---------------------------------------------------------------------------

UNIT_COSTS: dict[str, float] = {
    # Model tokens
    "model_input_token": 3.0 / 1_000_000,
    "model_output_token": 15.0 / 1_000_000,
    "cache_write_token": 3.75 / 1_000_000,
    "cache_read_token": 0.30 / 1_000_000,
    # Storage ($0.018 / GiB)
    "storage_per_byte": 0.018 / _GIB,
    # Document processing
    "document_page": 0.01,
    "document_ocr_page": 0.015,
    "docx_document": 0.001,
    "excel_sheet": 0.001,
    # Embeddings
    "text_embedding_token": 0.02 / 1_000_000,
    "image_embedding": 0.0001,
    # Search
    "vector_search_query": 0.00073,
    "hybrid_search_query": 0.001,
    # Audio transcription
    "audio_input_token": 6.0 / 1_000_000,
    "audio_output_token": 10.0 / 1_000_000,
}

_PAYG_MARGIN = 1.25

PAYG_RATES: dict[str, float] = {name: cost * _PAYG_MARGIN for name, cost in UNIT_COSTS.items()}
PAYG_RATES["api_call"] = 0.01


def get_unit_cost(name: str) -> float:
    """Return the unit cost for *name*.

    Raises
    ------
    KeyError
        If *name* is not a known pricing unit.
    """
    return UNIT_COSTS[name]


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanTier(str, Enum):
    """Subscription plan tiers."""

    FREE = "free"
    FREE_TRIAL = "free_trial"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    UNLIMITED = "unlimited"


class PlanFeatures(BaseModel):
    """Feature flags bundled with a plan tier."""

    model_config = ConfigDict(frozen=True)

    extended_thinking: bool = False
    prompt_caching: bool = False
    priority_support: bool = False
    custom_integrations: bool = False


class PlanConfig(BaseModel):
    """Limits and monthly price of a single plan tier."""

    model_config = ConfigDict(frozen=True)

    name: str
    price: float
    monthly_token_limit: int
    monthly_api_call_limit: int
    storage_limit_bytes: int
    max_documents: int
    allow_overage: bool
    features: PlanFeatures


_ALL_FEATURES = PlanFeatures(
    extended_thinking=True,
    prompt_caching=True,
    priority_support=True,
    custom_integrations=True,
)
_STANDARD_FEATURES = PlanFeatures(extended_thinking=True, prompt_caching=True)

PRICING_PLANS: dict[PlanTier, PlanConfig] = {
    PlanTier.FREE: PlanConfig(
        name="Free",
        price=0.0,
        monthly_token_limit=100_000,
        monthly_api_call_limit=500,
        storage_limit_bytes=10 * _MIB,
        max_documents=10,
        allow_overage=False,
        features=PlanFeatures(),
    ),
    PlanTier.FREE_TRIAL: PlanConfig(
        name="Free Trial",
        price=0.0,
        monthly_token_limit=1_000_000,
        monthly_api_call_limit=500,
        storage_limit_bytes=50 * _MIB,
        max_documents=20,
        allow_overage=False,
        features=_STANDARD_FEATURES,
    ),
    PlanTier.PRO: PlanConfig(
        name="Pro",
        price=25.0,
        monthly_token_limit=1_000_000,
        monthly_api_call_limit=500,
        storage_limit_bytes=50 * _MIB,
        max_documents=20,
        allow_overage=False,
        features=_STANDARD_FEATURES,
    ),
    PlanTier.ENTERPRISE: PlanConfig(
        name="Enterprise",
        price=200.0,
        monthly_token_limit=10_000_000,
        monthly_api_call_limit=5_000,
        storage_limit_bytes=500 * _MIB,
        max_documents=200,
        allow_overage=True,
        features=_ALL_FEATURES,
    ),
    # Granted by operators; carries no subscription charge.
    PlanTier.UNLIMITED: PlanConfig(
        name="Unlimited",
        price=0.0,
        monthly_token_limit=999_999_999,
        monthly_api_call_limit=999_999,
        storage_limit_bytes=999 * _GIB,
        max_documents=999_999,
        allow_overage=True,
        features=_ALL_FEATURES,
    ),
}


def get_plan_config(tier: PlanTier | str) -> PlanConfig:
    """Return the plan configuration for *tier*.

    Unknown tier names resolve to the free plan so that a stale or
    mistyped ``plan_tier`` column never grants more than the minimum.
    """
    try:
        return PRICING_PLANS[PlanTier(tier)]
    except ValueError:
        logger.warning("Unknown plan tier '%s'; falling back to free", tier)
        return PRICING_PLANS[PlanTier.FREE]


def is_within_quota(tokens: int, api_calls: int, storage_bytes: int, tier: PlanTier | str) -> bool:
    """Return True when all three usage figures fit inside the plan limits."""
    plan = get_plan_config(tier)
    return (
        tokens <= plan.monthly_token_limit
        and api_calls <= plan.monthly_api_call_limit
        and storage_bytes <= plan.storage_limit_bytes
    )


# ---------------------------------------------------------------------------
# Cost formulas
# ---------------------------------------------------------------------------


def calculate_token_cost(
    input_tokens: int,
    output_tokens: int,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """Cost of a model call from its token counts."""
    return (
        input_tokens * UNIT_COSTS["model_input_token"]
        + output_tokens * UNIT_COSTS["model_output_token"]
        + cache_write_tokens * UNIT_COSTS["cache_write_token"]
        + cache_read_tokens * UNIT_COSTS["cache_read_token"]
    )


def calculate_overage_cost(tokens_over: int, api_calls_over: int, storage_over: int) -> float:
    """PAYG charge for usage beyond the plan quota.

    Each argument is the amount *over* the limit for that dimension (callers
    clamp negatives to zero before calling).
    """
    return (
        tokens_over * PAYG_RATES["model_input_token"]
        + api_calls_over * PAYG_RATES["api_call"]
        + storage_over * PAYG_RATES["storage_per_byte"]
    )


def calculate_storage_cost(size_bytes: int) -> float:
    """Monthly storage cost for *size_bytes*."""
    return size_bytes * UNIT_COSTS["storage_per_byte"]


def calculate_extraction_cost(
    processor_type: str,
    page_count: int,
    *,
    used_ocr: bool = False,
    sheet_count: int = 1,
) -> float:
    """Cost of extracting text from a document.

    ``pdf`` is billed per page (OCR pages at the higher rate), ``docx`` per
    document, ``excel`` per sheet, and plain ``text`` is free.  Unknown
    processor types are billed as PDF pages.
    """
    if processor_type == "docx":
        return UNIT_COSTS["docx_document"]
    if processor_type == "excel":
        return sheet_count * UNIT_COSTS["excel_sheet"]
    if processor_type == "text":
        return 0.0
    unit = "document_ocr_page" if used_ocr else "document_page"
    return page_count * UNIT_COSTS[unit]


def calculate_embedding_cost(embedding_type: str, *, token_count: int = 0, image_count: int = 0) -> float:
    """Cost of generating text or image embeddings."""
    if embedding_type == "image":
        return image_count * UNIT_COSTS["image_embedding"]
    return token_count * UNIT_COSTS["text_embedding_token"]


def calculate_search_cost(search_type: str, query_tokens: int = 0) -> float:
    """Cost of one search query including the query embedding."""
    query_unit = "hybrid_search_query" if search_type == "hybrid" else "vector_search_query"
    return UNIT_COSTS[query_unit] + query_tokens * UNIT_COSTS["text_embedding_token"]
