"""Tests for bucket and billing-period calendar helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from metering_engine.periods import (
    PeriodType,
    add_months,
    bucket_end,
    ensure_utc,
    month_bounds,
    previous_bucket,
    truncate,
)


class TestEnsureUtc:
    def test_naive_is_treated_as_utc(self) -> None:
        assert ensure_utc(datetime(2024, 3, 1, 12)).tzinfo is UTC

    def test_aware_is_converted(self) -> None:
        value = datetime(2024, 3, 1, 12, tzinfo=UTC) + timedelta(0)
        assert ensure_utc(value) == value


class TestAddMonths:
    def test_clamps_day_to_month_end(self) -> None:
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)

    def test_crosses_year_boundary(self) -> None:
        assert add_months(datetime(2024, 12, 15, tzinfo=UTC), 1) == datetime(2025, 1, 15, tzinfo=UTC)
        assert add_months(datetime(2024, 1, 15, tzinfo=UTC), -1) == datetime(2023, 12, 15, tzinfo=UTC)


class TestBuckets:
    def test_month_bounds(self) -> None:
        start, end = month_bounds(datetime(2024, 2, 14, 9, 30, tzinfo=UTC))
        assert start == datetime(2024, 2, 1, tzinfo=UTC)
        assert end == datetime(2024, 2, 29, 23, 59, 59, 999999, tzinfo=UTC)

    def test_truncate(self) -> None:
        value = datetime(2024, 5, 17, 13, 45, 12, tzinfo=UTC)
        assert truncate(PeriodType.HOURLY, value) == datetime(2024, 5, 17, 13, tzinfo=UTC)
        assert truncate(PeriodType.DAILY, value) == datetime(2024, 5, 17, tzinfo=UTC)
        assert truncate(PeriodType.MONTHLY, value) == datetime(2024, 5, 1, tzinfo=UTC)

    def test_bucket_end_is_exclusive_next_start(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=UTC)
        assert bucket_end(PeriodType.HOURLY, start) == datetime(2024, 1, 1, 1, tzinfo=UTC)
        assert bucket_end(PeriodType.DAILY, start) == datetime(2024, 1, 2, tzinfo=UTC)
        assert bucket_end(PeriodType.MONTHLY, start) == datetime(2024, 2, 1, tzinfo=UTC)

    def test_previous_bucket(self) -> None:
        now = datetime(2024, 3, 1, 0, 5, tzinfo=UTC)
        assert previous_bucket(PeriodType.HOURLY, now) == datetime(2024, 2, 29, 23, tzinfo=UTC)
        assert previous_bucket(PeriodType.DAILY, now) == datetime(2024, 2, 29, tzinfo=UTC)
        assert previous_bucket(PeriodType.MONTHLY, now) == datetime(2024, 2, 1, tzinfo=UTC)
