"""Slot indexer: checkpointed Solana transaction ingestion and a read-only query API."""

__version__ = "0.1.0"
