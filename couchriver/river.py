"""
CouchDB river: wires the feed reader and the batch indexer together.

Two daemon threads share a bounded queue and a stop event; nothing else.
"""

import logging
import signal
import threading
from typing import Optional

from opensearchpy import OpenSearch

from .config.settings import Settings
from .connectors.cdc import (
    BatchIndexer,
    BoundedEventQueue,
    ChangeFeedReader,
    CheckpointStore,
    TransformHook,
    load_transform,
)
from .sinks import BulkSink, OpenSearchBulkSink, build_client

logger = logging.getLogger(__name__)


class CouchDBRiver:
    """
    One CouchDB database flowing into one index.

    Example:
        >>> river = CouchDBRiver(get_settings())
        >>> river.start()
        >>> ...
        >>> river.stop()
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[OpenSearch] = None,
        sink: Optional[BulkSink] = None,
        transform: Optional[TransformHook] = None
    ):
        self.settings = settings
        self.database = settings.couchdb.database
        self.client = client or build_client(settings.opensearch)
        self.sink = sink or OpenSearchBulkSink(self.client, retries=settings.index.bulk_retries)

        if transform is None and settings.river.transform:
            transform = load_transform(settings.river.transform)
        self.transform = transform

        self.stop_event = threading.Event()
        self.event_queue = BoundedEventQueue(settings.index.throttle_size, self.stop_event)
        self.checkpoint_store = CheckpointStore(
            self.client,
            river_index=settings.river.index,
            river_name=settings.river.name,
            database=self.database,
        )
        self.reader = ChangeFeedReader(
            settings.couchdb,
            self.checkpoint_store,
            self.event_queue,
            self.stop_event,
            throttle_delay=settings.river.throttle_delay,
            error_delay=settings.river.error_delay,
        )
        self.indexer = BatchIndexer(
            event_queue=self.event_queue,
            sink=self.sink,
            checkpoint_store=self.checkpoint_store,
            stop_event=self.stop_event,
            database=self.database,
            index_name=settings.index_name,
            index_type=settings.index.type,
            bulk_size=settings.index.bulk_size,
            bulk_timeout=settings.index.bulk_timeout,
            ignore_attachments=settings.couchdb.ignore_attachments,
            transform=self.transform,
        )

        self._reader_thread: Optional[threading.Thread] = None
        self._indexer_thread: Optional[threading.Thread] = None
        self._original_sigterm = None
        self._original_sigint = None

    @property
    def running(self) -> bool:
        threads = (self._reader_thread, self._indexer_thread)
        return any(t is not None and t.is_alive() for t in threads)

    def start(self) -> None:
        """Start the reader and indexer threads."""
        if self.running:
            raise RuntimeError(f"river for database {self.database} is already running")

        logger.info(
            f"Starting CouchDB river: db [{self.database}], index [{self.settings.index_name}]",
            extra={
                "database": self.database,
                "index": self.settings.index_name,
                "bulk_size": self.settings.index.bulk_size,
                "throttle_size": self.settings.index.throttle_size,
                "transform": repr(self.transform) if self.transform else None
            }
        )
        self.stop_event.clear()
        self._reader_thread = threading.Thread(
            target=self.reader.run, name=f"couchdb_river_slurper:{self.database}", daemon=True
        )
        self._indexer_thread = threading.Thread(
            target=self.indexer.run, name=f"couchdb_river_indexer:{self.database}", daemon=True
        )
        self._reader_thread.start()
        self._indexer_thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Request both threads to stop and wait for them.

        An in-flight feed read or bulk submit completes or fails on its own.
        """
        logger.info(f"Closing CouchDB river for database {self.database}", extra={"database": self.database})
        self.stop_event.set()
        for thread in (self._reader_thread, self._indexer_thread):
            if thread is not None:
                thread.join(timeout)

    def reset(self) -> None:
        """Forget the checkpoint; the next connection starts at the feed origin."""
        self.checkpoint_store.delete()

    def run_forever(self) -> None:
        """Run in the foreground until SIGTERM / SIGINT."""
        self._setup_signal_handlers()
        try:
            self.start()
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.stop(timeout=self.settings.couchdb.read_timeout)
            self._restore_signal_handlers()

    def _setup_signal_handlers(self) -> None:
        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}", extra={"database": self.database})
            self.stop_event.set()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
