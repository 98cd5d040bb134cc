"""
Ingestion pipeline.

Severity classification, the indicator store, the upsert engine, fetch and
normalize tracking, scheduling, and the service that ties them together.
"""

__all__ = ["severity", "store", "upsert", "tracking", "scheduler", "service"]
