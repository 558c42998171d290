"""Logging setup for metering engine processes."""

from metering_engine.telemetry.json_formatter import JSONFormatter
from metering_engine.telemetry.log_setup import configure_logging

__all__ = ["JSONFormatter", "configure_logging"]
