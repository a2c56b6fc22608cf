"""Data access abstraction layer: one query DSL, four backends."""

__version__ = "0.1.0"
