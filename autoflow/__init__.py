"""Autoflow: event-triggered automation workflows for contacts."""

__version__ = "1.0.0"
