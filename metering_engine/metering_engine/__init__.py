"""Multi-tenant usage metering, quota enforcement, and billing engine."""

__version__ = "0.4.0"
