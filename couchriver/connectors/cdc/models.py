"""
Data model for the changes feed pipeline.

ParsedEvent is the decoded form of one feed line; IndexOperation and
DeleteOperation are the mutations a batch carries to the sink.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# seq is opaque: an int (CouchDB 1.x), a string (2.x+) or a list (BigCouch)
Seq = Union[str, int, List[Any]]

DESIGN_DOC_PREFIX = "_design/"


def seq_number(seq: Optional[Seq]) -> Optional[int]:
    """
    Numeric position of a sequence, for ordering only.

    ``42`` and ``"42"`` give 42, ``"42-g1AAA..."`` its numeric prefix and a
    BigCouch ``[42, "g1AAA..."]`` its first element. None when the sequence
    has no recognisable number, in which case it cannot be ordered.
    """
    if isinstance(seq, bool):
        return None
    if isinstance(seq, int):
        return seq
    if isinstance(seq, (list, tuple)):
        return seq_number(seq[0]) if seq else None
    if isinstance(seq, str):
        head = seq.split("-", 1)[0]
        return int(head) if head.isdigit() else None
    return None


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class FeedConnectionError(CDCError):
    """Connect or read failure on the changes feed. Always transient."""
    pass


class MalformedRecordError(CDCError):
    """Feed line that cannot be turned into an event."""
    pass


class TransformError(CDCError):
    """Transform hook failed on an event."""
    pass


class CheckpointError(CDCError):
    """Error loading or deleting the checkpoint."""
    pass


class CheckpointSerializationError(CheckpointError):
    """Checkpoint value could not be serialized for storage."""
    pass


class SinkBatchError(CDCError):
    """The sink rejected or never received a whole batch."""
    pass


class LineOutcome(str, Enum):
    """Terminal state of one feed line."""
    PARSE_ERROR = "parse_error"
    ERROR_MARKER = "error_marker"
    DESIGN_DOC = "design_doc"
    TRANSFORM_ERROR = "transform_error"
    IGNORED = "ignored"
    DELETED = "deleted"
    INDEXED = "indexed"
    UNKNOWN = "unknown"

    @property
    def advances_checkpoint(self) -> bool:
        return self not in (LineOutcome.PARSE_ERROR, LineOutcome.ERROR_MARKER)


@dataclass
class ParsedEvent:
    """Decoded change record."""
    seq: Optional[Seq]
    id: str
    deleted: bool = False
    doc: Optional[Dict[str, Any]] = None
    ignore: bool = False
    index: Optional[str] = None
    type: Optional[str] = None
    routing: Optional[str] = None
    parent: Optional[str] = None

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ParsedEvent":
        """
        Build an event from a decoded feed line.

        Raises:
            MalformedRecordError: If the change carries an error marker or no id
        """
        if "error" in change:
            raise MalformedRecordError(f"feed reported error: {change.get('error')}")
        if change.get("id") is None:
            raise MalformedRecordError("change has no id")

        doc = change.get("doc")
        return cls(
            seq=change.get("seq"),
            id=str(change["id"]),
            deleted=change.get("deleted") is True,
            doc=doc if isinstance(doc, dict) else None,
            ignore=change.get("ignore") is True,
            index=change.get("_index"),
            type=change.get("_type"),
            routing=change.get("_routing"),
            parent=change.get("_parent"),
        )

    @property
    def is_design_doc(self) -> bool:
        return self.id.startswith(DESIGN_DOC_PREFIX)


@dataclass
class DeleteOperation:
    """Remove a document from the index."""
    index: str
    id: str
    type: Optional[str] = None
    routing: Optional[str] = None
    parent: Optional[str] = None

    action = "delete"


@dataclass
class IndexOperation:
    """Create or replace a document in the index."""
    index: str
    id: str
    doc: Dict[str, Any] = field(default_factory=dict)
    type: Optional[str] = None
    routing: Optional[str] = None
    parent: Optional[str] = None

    action = "index"


Operation = Union[IndexOperation, DeleteOperation]


@dataclass
class LineResult:
    """Outcome of classifying one feed line."""
    outcome: LineOutcome
    seq: Optional[Seq] = None
    operation: Optional[Operation] = None
