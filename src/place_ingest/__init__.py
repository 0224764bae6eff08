"""Coordination layer for resumable, sharded place ingestion."""

__version__ = "0.1.0"
