"""Batch job orchestration with adaptive concurrency control."""

__version__ = "0.1.0"
