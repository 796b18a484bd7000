"""Batch engine: job lifecycle, execution loop, retry policy and resource control."""
