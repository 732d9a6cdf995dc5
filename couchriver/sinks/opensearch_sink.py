"""
OpenSearch bulk sink.

Renders index/delete operations as a bulk request body and submits them in
one call. Transport-level failures can be retried a configurable number of
times; per-item failures are reported, never retried.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from opensearchpy import OpenSearch
from opensearchpy.exceptions import ConnectionError as TransportConnectionError
from opensearchpy.exceptions import ConnectionTimeout, OpenSearchException
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config.settings import OpenSearchSettings
from ..connectors.cdc.models import DeleteOperation, IndexOperation, Operation, SinkBatchError

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """Outcome of one bulk request."""
    took: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def failure_message(self) -> str:
        parts = []
        for failure in self.failures:
            parts.append(
                f"[{failure.get('_index')}]/[{failure.get('_id')}] "
                f"{failure.get('status')}: {failure.get('error')}"
            )
        return "; ".join(parts)


class BulkSink(Protocol):
    """Executes a batch of operations atomically (in intent)."""

    def submit(self, operations: Sequence[Operation]) -> BulkResult:
        ...


def build_client(settings: OpenSearchSettings) -> OpenSearch:
    """Create an OpenSearch client from settings."""
    http_auth = None
    if settings.username:
        http_auth = (settings.username, settings.password or "")
    return OpenSearch(
        hosts=settings.hosts,
        http_auth=http_auth,
        use_ssl=settings.use_ssl,
        verify_certs=settings.verify_certs,
        timeout=settings.timeout,
    )


def operation_to_actions(operation: Operation) -> List[Dict[str, Any]]:
    """Bulk body lines (action, and source for index) for one operation."""
    meta: Dict[str, Any] = {"_index": operation.index, "_id": operation.id}
    if operation.type:
        meta["_type"] = operation.type
    # Parent/child lives on the join field now; the parent id only routes
    routing = operation.routing or operation.parent
    if routing:
        meta["routing"] = routing

    if isinstance(operation, DeleteOperation):
        return [{"delete": meta}]
    if isinstance(operation, IndexOperation):
        return [{"index": meta}, operation.doc]
    raise TypeError(f"unsupported operation {operation!r}")


class OpenSearchBulkSink:
    """Bulk sink backed by an opensearch-py client."""

    def __init__(self, client: OpenSearch, retries: int = 0, refresh: Optional[str] = None):
        if retries < 0:
            raise ValueError("retries must be non-negative")
        self.client = client
        self.retries = retries
        self.refresh = refresh

    def submit(self, operations: Sequence[Operation]) -> BulkResult:
        """
        Submit ``operations`` as one bulk request.

        Returns:
            BulkResult with any per-item failures

        Raises:
            SinkBatchError: If the whole request failed (after retries)
        """
        if not operations:
            return BulkResult()

        body: List[Dict[str, Any]] = []
        for operation in operations:
            body.extend(operation_to_actions(operation))

        params = {"refresh": self.refresh} if self.refresh else {}
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retries + 1),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type((TransportConnectionError, ConnectionTimeout)),
                reraise=True
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying bulk request (attempt {attempt.retry_state.attempt_number}/{self.retries + 1})",
                            extra={"operations": len(operations)}
                        )
                    response = self.client.bulk(body=body, params=params)
        except OpenSearchException as e:
            raise SinkBatchError(f"bulk request of {len(operations)} operations failed: {e}") from e

        items = response.get("items", [])
        failures = []
        if response.get("errors"):
            for item in items:
                for action, outcome in item.items():
                    if outcome.get("error") is not None:
                        failures.append(dict(outcome, action=action))

        return BulkResult(took=response.get("took", 0), items=items, failures=failures)
