"""Streaming run orchestration client for prompt execution."""

__version__ = "0.1.0"
