"""Tests for the pricing table and cost formulas."""

from __future__ import annotations

import pytest

from metering_engine.pricing import (
    PAYG_RATES,
    PRICING_PLANS,
    UNIT_COSTS,
    PlanTier,
    calculate_embedding_cost,
    calculate_extraction_cost,
    calculate_overage_cost,
    calculate_search_cost,
    calculate_storage_cost,
    calculate_token_cost,
    get_plan_config,
    get_unit_cost,
    is_within_quota,
)

# ---------------------------------------------------------------------------
# Unit costs
# ---------------------------------------------------------------------------


class TestUnitCosts:
    def test_model_token_list_prices(self) -> None:
        assert UNIT_COSTS["model_input_token"] == pytest.approx(0.000003)
        assert UNIT_COSTS["model_output_token"] == pytest.approx(0.000015)

    def test_payg_rates_carry_25_percent_margin(self) -> None:
        for name, cost in UNIT_COSTS.items():
            assert PAYG_RATES[name] == pytest.approx(cost * 1.25)
        assert PAYG_RATES["api_call"] == pytest.approx(0.01)

    def test_unknown_unit_raises(self) -> None:
        with pytest.raises(KeyError):
            get_unit_cost("teleportation")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    def test_every_tier_has_a_plan(self) -> None:
        assert set(PRICING_PLANS) == set(PlanTier)

    def test_free_plan_limits(self) -> None:
        plan = get_plan_config(PlanTier.FREE)
        assert plan.price == 0.0
        assert plan.monthly_token_limit == 100_000
        assert plan.monthly_api_call_limit == 500
        assert plan.allow_overage is False

    def test_enterprise_allows_overage(self) -> None:
        plan = get_plan_config("enterprise")
        assert plan.price == 200.0
        assert plan.allow_overage is True
        assert plan.features.priority_support is True

    def test_unknown_tier_falls_back_to_free(self) -> None:
        assert get_plan_config("platinum") == PRICING_PLANS[PlanTier.FREE]

    def test_plans_are_immutable(self) -> None:
        with pytest.raises(Exception):
            PRICING_PLANS[PlanTier.PRO].price = 0.0  # type: ignore[misc]

    def test_is_within_quota(self) -> None:
        assert is_within_quota(100_000, 500, 10 * 1024 * 1024, PlanTier.FREE) is True
        assert is_within_quota(100_001, 0, 0, PlanTier.FREE) is False
        assert is_within_quota(0, 501, 0, PlanTier.FREE) is False


# ---------------------------------------------------------------------------
# Cost formulas
# ---------------------------------------------------------------------------


class TestCostFormulas:
    def test_token_cost(self) -> None:
        assert calculate_token_cost(1_000_000, 0) == pytest.approx(3.0)
        assert calculate_token_cost(0, 1_000_000) == pytest.approx(15.0)
        assert calculate_token_cost(0, 0, cache_write_tokens=1_000_000, cache_read_tokens=1_000_000) == (
            pytest.approx(3.75 + 0.30)
        )

    def test_overage_cost(self) -> None:
        cost = calculate_overage_cost(1_000_000, 10, 0)
        assert cost == pytest.approx(3.0 * 1.25 + 0.10)

    def test_zero_overage_is_free(self) -> None:
        assert calculate_overage_cost(0, 0, 0) == 0.0

    def test_storage_cost_per_gib(self) -> None:
        assert calculate_storage_cost(1024 * 1024 * 1024) == pytest.approx(0.018)

    @pytest.mark.parametrize(
        ("processor", "pages", "ocr", "sheets", "expected"),
        [
            ("pdf", 10, False, 1, 0.10),
            ("pdf", 10, True, 1, 0.15),
            ("docx", 40, False, 1, 0.001),
            ("excel", 0, False, 3, 0.003),
            ("text", 99, False, 1, 0.0),
            ("markdown", 2, False, 1, 0.02),
        ],
    )
    def test_extraction_cost(self, processor: str, pages: int, ocr: bool, sheets: int, expected: float) -> None:
        assert calculate_extraction_cost(processor, pages, used_ocr=ocr, sheet_count=sheets) == pytest.approx(expected)

    def test_embedding_cost(self) -> None:
        assert calculate_embedding_cost("text", token_count=1_000_000) == pytest.approx(0.02)
        assert calculate_embedding_cost("image", image_count=10) == pytest.approx(0.001)

    def test_search_cost_includes_query_embedding(self) -> None:
        assert calculate_search_cost("vector") == pytest.approx(0.00073)
        assert calculate_search_cost("hybrid", query_tokens=1_000_000) == pytest.approx(0.001 + 0.02)
