"""Metering pipeline: usage events, fast counters, and the event recorder.

Captures every billable operation per tenant for quota enforcement and
monthly billing.  The recorder lives in
:mod:`metering_engine.metering.recorder`.
"""

from metering_engine.metering.events import CounterMetric, UsageCategory, UsageEvent, UsageEventType

__all__ = ["CounterMetric", "UsageCategory", "UsageEvent", "UsageEventType"]
