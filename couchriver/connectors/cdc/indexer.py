"""
Batch indexer for changes feed lines.

Drains the bounded queue, classifies every line into an index or delete
operation (or none), and submits each batch together with the checkpoint
write for the last sequence it saw. The checkpoint therefore only moves when
the sink accepts the request carrying the mutations.
"""

import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from prometheus_client import Counter, Histogram

from ...utils.logging import CorrelationContext
from .checkpoint_store import CheckpointStore
from .event_queue import BoundedEventQueue
from .models import (
    CheckpointSerializationError,
    DeleteOperation,
    IndexOperation,
    LineOutcome,
    LineResult,
    MalformedRecordError,
    Operation,
    ParsedEvent,
    Seq,
    SinkBatchError,
    TransformError,
    seq_number,
)
from .transform import TransformHook

if TYPE_CHECKING:
    from ...sinks.opensearch_sink import BulkResult, BulkSink

logger = logging.getLogger(__name__)

ATTACHMENTS = "_attachments"

records_processed_total = Counter(
    'couchriver_records_total',
    'Feed lines processed, by outcome',
    ['database', 'outcome']
)
batch_duration_seconds = Histogram(
    'couchriver_batch_seconds',
    'Time to submit one bulk batch',
    ['database']
)
batch_failures_total = Counter(
    'couchriver_batch_failures_total',
    'Bulk batches that failed entirely or partially',
    ['database', 'kind']
)


class BatchIndexer:
    """
    Consume feed lines and apply them to the sink in batches.

    Example:
        >>> indexer = BatchIndexer(
        ...     event_queue=queue, sink=sink, checkpoint_store=store,
        ...     stop_event=stop, database="mydb", index_name="mydb"
        ... )
        >>> threading.Thread(target=indexer.run, daemon=True).start()
    """

    def __init__(
        self,
        event_queue: BoundedEventQueue,
        sink: "BulkSink",
        checkpoint_store: CheckpointStore,
        stop_event: threading.Event,
        database: str,
        index_name: str,
        index_type: Optional[str] = None,
        bulk_size: int = 100,
        bulk_timeout: float = 0.01,
        ignore_attachments: bool = False,
        transform: Optional[TransformHook] = None
    ):
        if bulk_size <= 0:
            raise ValueError("bulk_size must be positive")
        self.event_queue = event_queue
        self.sink = sink
        self.checkpoint_store = checkpoint_store
        self.stop_event = stop_event
        self.database = database
        self.index_name = index_name
        self.index_type = index_type
        self.bulk_size = bulk_size
        self.bulk_timeout = bulk_timeout
        self.ignore_attachments = ignore_attachments
        self.transform = transform
        # Numeric position of the last checkpoint the sink accepted
        self._committed_number: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self.stop_event.is_set()

    def run(self) -> None:
        """Index batches until stopped."""
        logger.info(
            f"Starting indexer for database {self.database}",
            extra={"database": self.database, "index": self.index_name, "bulk_size": self.bulk_size}
        )
        while not self.closed:
            line = self.event_queue.take()
            if line is None or self.closed:
                break
            try:
                self.index_batch(line)
            except Exception as e:
                # A bug in one batch must not kill the indexer thread
                logger.error(
                    f"Unexpected error indexing batch: {e}",
                    exc_info=True,
                    extra={"database": self.database}
                )
        logger.info(f"Closing indexer for database {self.database}", extra={"database": self.database})

    def index_batch(self, first_line: str) -> List[Operation]:
        """
        Build and submit one batch starting with ``first_line``.

        The checkpoint written is the greatest sequence seen in the batch. It
        is left out when it would move the stored checkpoint backwards, which
        happens when a reconnect replays lines that were already queued.

        Returns:
            The operations submitted, checkpoint write included
        """
        with CorrelationContext():
            batch: List[Operation] = []
            last_seq = self._later_seq(None, self.process_line(first_line, batch))

            # Spin a bit to pick up more changes
            while len(batch) < self.bulk_size:
                line = self.event_queue.poll(self.bulk_timeout)
                if line is None:
                    break
                last_seq = self._later_seq(last_seq, self.process_line(line, batch))

            checkpoint: Optional[IndexOperation] = None
            if last_seq is not None and self._behind_committed(last_seq):
                logger.debug(
                    f"Not moving checkpoint back to {last_seq}, already committed {self._committed_number}",
                    extra={"database": self.database, "seq": last_seq}
                )
            elif last_seq is not None:
                try:
                    checkpoint = self.checkpoint_store.write(last_seq, batch)
                except CheckpointSerializationError as e:
                    logger.error(
                        f"Failed to add last_seq entry to bulk, batch may replay on restart: {e}",
                        extra={"database": self.database}
                    )

            result = self._submit(batch)
            if checkpoint is not None and result is not None and not self._checkpoint_failed(result, checkpoint):
                number = seq_number(last_seq)
                if number is not None:
                    self._committed_number = (
                        number if self._committed_number is None else max(number, self._committed_number)
                    )
            return batch

    @staticmethod
    def _later_seq(current: Optional[Seq], seq: Optional[Seq]) -> Optional[Seq]:
        if seq is None:
            return current
        if current is None:
            return seq
        current_number, number = seq_number(current), seq_number(seq)
        if current_number is not None and number is not None and number < current_number:
            return current
        return seq

    def _behind_committed(self, seq: Seq) -> bool:
        number = seq_number(seq)
        return number is not None and self._committed_number is not None and number < self._committed_number

    @staticmethod
    def _checkpoint_failed(result: "BulkResult", checkpoint: IndexOperation) -> bool:
        return any(
            f.get("_index") == checkpoint.index and f.get("_id") == checkpoint.id
            for f in result.failures
        )

    def _submit(self, batch: List[Operation]) -> Optional["BulkResult"]:
        """Send ``batch`` to the sink. Returns None if the whole request failed."""
        if not batch:
            return None
        started = time.time()
        try:
            result = self.sink.submit(batch)
        except SinkBatchError as e:
            batch_failures_total.labels(database=self.database, kind='batch').inc()
            logger.warning(
                f"Failed to execute bulk: {e}",
                extra={"database": self.database, "operations": len(batch)}
            )
            return None
        finally:
            batch_duration_seconds.labels(database=self.database).observe(time.time() - started)

        if result.has_failures:
            batch_failures_total.labels(database=self.database, kind='partial').inc()
            logger.warning(
                f"Failed to execute {len(result.failures)} of {len(batch)} bulk operations: "
                f"{result.failure_message()}",
                extra={"database": self.database, "operations": len(batch)}
            )
        else:
            logger.debug(
                f"Submitted bulk of {len(batch)} operations",
                extra={"database": self.database, "operations": len(batch)}
            )
        return result

    def process_line(self, line: str, batch: List[Operation]) -> Optional[Seq]:
        """
        Classify ``line``, append its operation to ``batch`` if any.

        Returns:
            The line's seq when the checkpoint may move past it, else None
        """
        result = self.classify(line)
        records_processed_total.labels(database=self.database, outcome=result.outcome.value).inc()
        if result.operation is not None:
            batch.append(result.operation)
        return result.seq if result.outcome.advances_checkpoint else None

    def classify(self, line: str) -> LineResult:
        """Decide what a single feed line turns into."""
        try:
            change = json.loads(line)
            if not isinstance(change, dict):
                raise ValueError("change is not a JSON object")
        except ValueError as e:
            logger.warning(f"Failed to parse {line}: {e}", extra={"database": self.database})
            return LineResult(LineOutcome.PARSE_ERROR)

        try:
            event = ParsedEvent.from_change(change)
        except MalformedRecordError as e:
            logger.warning(f"Received error {line}: {e}", extra={"database": self.database})
            return LineResult(LineOutcome.ERROR_MARKER)

        seq = event.seq
        if event.is_design_doc:
            logger.debug(f"Ignoring design document {event.id}", extra={"database": self.database})
            return LineResult(LineOutcome.DESIGN_DOC, seq)

        if self.transform is not None:
            try:
                event = self.transform.transform(event)
            except TransformError as e:
                logger.warning(
                    f"Failed to transform {line}, ignoring: {e}",
                    extra={"database": self.database, "doc_id": event.id}
                )
                return LineResult(LineOutcome.TRANSFORM_ERROR, seq)
            except Exception as e:
                logger.warning(
                    f"Transform raised on {line}, ignoring: {e}",
                    exc_info=True,
                    extra={"database": self.database, "doc_id": event.id}
                )
                return LineResult(LineOutcome.TRANSFORM_ERROR, seq)

        if event is None or event.ignore:
            return LineResult(LineOutcome.IGNORED, seq)

        if event.deleted:
            operation = DeleteOperation(
                index=event.index or self.index_name,
                id=event.id,
                type=event.type or self.index_type,
                routing=event.routing,
                parent=event.parent,
            )
            logger.debug(
                f"processing [delete]: [{operation.index}]/[{operation.id}]",
                extra={"database": self.database}
            )
            return LineResult(LineOutcome.DELETED, seq, operation)

        if event.doc is not None:
            operation = IndexOperation(
                index=event.index or self.index_name,
                id=event.id,
                doc=self._prepare_doc(event.doc),
                type=event.type or self.index_type,
                routing=event.routing,
                parent=event.parent,
            )
            logger.debug(
                f"processing [index]: [{operation.index}]/[{operation.id}]",
                extra={"database": self.database}
            )
            return LineResult(LineOutcome.INDEXED, seq, operation)

        logger.warning(f"Ignoring unknown change {line}", extra={"database": self.database})
        return LineResult(LineOutcome.UNKNOWN, seq)

    def _prepare_doc(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if self.ignore_attachments and ATTACHMENTS in doc:
            doc = {k: v for k, v in doc.items() if k != ATTACHMENTS}
        return doc
