"""Snapshot split planning and assignment for CDC sources."""

__version__ = "0.1.0"
