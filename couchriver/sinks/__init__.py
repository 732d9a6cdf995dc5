"""
Sinks receiving the river's bulk batches.
"""

from .opensearch_sink import BulkResult, BulkSink, OpenSearchBulkSink, build_client

__all__ = ["BulkResult", "BulkSink", "OpenSearchBulkSink", "build_client"]
