"""Tracing and in-process redemption counters."""
