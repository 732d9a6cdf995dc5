"""
Index-backed checkpoint store for the changes feed sequence.

The checkpoint lives in a single document of the river index, keyed by the
river name, holding one ``{"last_seq": ...}`` entry per source database.
Writes are not a separate round trip: they ride along in the bulk request
that carries the batch's mutations.
"""

import json
import logging
from typing import Any, List, Optional

from opensearchpy import OpenSearch
from opensearchpy.exceptions import ConnectionError as TransportConnectionError
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from prometheus_client import Counter

from .models import CheckpointError, CheckpointSerializationError, IndexOperation, Operation, Seq

logger = logging.getLogger(__name__)

LAST_SEQ = "last_seq"

checkpoint_loads_total = Counter(
    'couchriver_checkpoint_loads_total',
    'Total checkpoint loads',
    ['database', 'status']
)


def serialize_seq(seq: Seq) -> str:
    """
    Render a sequence the way it is stored.

    A composite (list) sequence becomes a JSON array string, anything else its
    plain string form.

    Raises:
        CheckpointSerializationError: If a composite sequence is not JSON encodable
    """
    if isinstance(seq, (list, tuple)):
        try:
            return json.dumps(list(seq), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise CheckpointSerializationError(f"cannot serialize seq {seq!r}: {e}") from e
    return str(seq)


class CheckpointStore:
    """
    Checkpoint store for one river / database pair.

    Example:
        >>> store = CheckpointStore(client, "couchdb-river", "my_river", "mydb")
        >>> store.read()
        '42'
        >>> store.write(57, batch)
    """

    def __init__(self, client: OpenSearch, river_index: str, river_name: str, database: str):
        self.client = client
        self.river_index = river_index
        self.river_name = river_name
        self.database = database

    @property
    def document_id(self) -> str:
        return f"{self.river_name}_seq"

    def read(self) -> Optional[str]:
        """
        Load the last committed sequence.

        Returns:
            The stored sequence string, or None if there is no checkpoint yet

        Raises:
            CheckpointError: If the store cannot be reached after retries
        """
        try:
            source = self._fetch()
        except OpenSearchException as e:
            checkpoint_loads_total.labels(database=self.database, status='error').inc()
            logger.error(
                f"Failed to read checkpoint: {e}",
                extra={"database": self.database, "river": self.river_name}
            )
            raise CheckpointError(f"Failed to read checkpoint: {e}") from e

        if source is None:
            checkpoint_loads_total.labels(database=self.database, status='not_found').inc()
            logger.info(
                f"No {LAST_SEQ} value found in index",
                extra={"database": self.database, "river": self.river_name}
            )
            return None

        entry = source.get(self.database)
        last_seq = entry.get(LAST_SEQ) if isinstance(entry, dict) else None
        status = 'success' if last_seq is not None else 'not_found'
        checkpoint_loads_total.labels(database=self.database, status=status).inc()
        logger.info(
            f"Read {LAST_SEQ}=[{last_seq}] from index",
            extra={"database": self.database, "river": self.river_name}
        )
        return last_seq

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransportConnectionError),
        reraise=True
    )
    def _fetch(self) -> Optional[dict]:
        # Refresh first: a get right after a bulk write may otherwise miss it
        try:
            self.client.indices.refresh(index=self.river_index)
            response = self.client.get(index=self.river_index, id=self.document_id)
        except NotFoundError:
            return None
        if not response.get("found", True):
            return None
        return response.get("_source") or {}

    def write(self, seq: Seq, batch: List[Operation]) -> IndexOperation:
        """
        Append the checkpoint write for ``seq`` to ``batch``.

        Raises:
            CheckpointSerializationError: If the sequence cannot be serialized;
                the batch is left untouched
        """
        serialized = serialize_seq(seq)
        operation = IndexOperation(
            index=self.river_index,
            id=self.document_id,
            doc={self.database: {LAST_SEQ: serialized}},
        )
        batch.append(operation)
        logger.debug(
            f"processing [_seq]: [{self.river_index}]/[{self.document_id}], {LAST_SEQ} [{serialized}]",
            extra={"database": self.database, "river": self.river_name}
        )
        return operation

    def delete(self) -> None:
        """
        Delete the checkpoint so the next connection starts from the feed origin.

        Raises:
            CheckpointError: If deletion fails for any reason other than absence
        """
        try:
            self.client.delete(index=self.river_index, id=self.document_id)
            logger.info(
                "Deleted checkpoint",
                extra={"database": self.database, "river": self.river_name}
            )
        except NotFoundError:
            logger.debug(
                "No checkpoint to delete",
                extra={"database": self.database, "river": self.river_name}
            )
        except OpenSearchException as e:
            logger.error(
                f"Failed to delete checkpoint: {e}",
                extra={"database": self.database, "river": self.river_name}
            )
            raise CheckpointError(f"Failed to delete checkpoint: {e}") from e
