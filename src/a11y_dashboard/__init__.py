"""Accessibility audit dashboard: ephemeral server store plus durable client store."""

__version__ = "0.1.0"
