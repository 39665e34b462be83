"""Telemetry configuration, structured logging, context propagation and demo services."""

__version__ = "2.1.0"