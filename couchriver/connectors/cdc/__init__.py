"""
CDC (Change Data Capture) module for CouchDB changes feed processing.
"""

from .models import (
    CDCError,
    FeedConnectionError,
    MalformedRecordError,
    TransformError,
    CheckpointError,
    CheckpointSerializationError,
    SinkBatchError,
    ParsedEvent,
    IndexOperation,
    DeleteOperation,
    LineOutcome,
)
from .checkpoint_store import CheckpointStore, serialize_seq
from .event_queue import BoundedEventQueue
from .changes_feed import ChangeFeedReader
from .transform import TransformHook, CallableTransform, load_transform
from .indexer import BatchIndexer

__all__ = [
    "CDCError",
    "FeedConnectionError",
    "MalformedRecordError",
    "TransformError",
    "CheckpointError",
    "CheckpointSerializationError",
    "SinkBatchError",
    "ParsedEvent",
    "IndexOperation",
    "DeleteOperation",
    "LineOutcome",
    "CheckpointStore",
    "serialize_seq",
    "BoundedEventQueue",
    "ChangeFeedReader",
    "TransformHook",
    "CallableTransform",
    "load_transform",
    "BatchIndexer",
]
