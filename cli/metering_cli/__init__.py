"""Operator CLI for the metering engine."""
