"""Offline validation of retrieval quality and latency."""
