"""Unit tests for the batch indexer."""

import json
import logging
import pytest
from unittest.mock import Mock, patch
import threading

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from opensearchpy.exceptions import NotFoundError

from couchriver.connectors.cdc.checkpoint_store import CheckpointStore
from couchriver.connectors.cdc.event_queue import BoundedEventQueue
from couchriver.connectors.cdc.indexer import BatchIndexer
from couchriver.connectors.cdc.models import (
    CheckpointSerializationError, DeleteOperation, IndexOperation, LineOutcome,
    SinkBatchError, TransformError, seq_number
)
from couchriver.connectors.cdc.transform import CallableTransform
from couchriver.sinks.opensearch_sink import BulkResult

RIVER_INDEX = "couchdb-river"


def change(seq, doc_id, **fields):
    """One feed line."""
    record = {"seq": seq, "id": doc_id, "changes": [{"rev": "1-abc"}]}
    record.update(fields)
    return json.dumps(record)


def mutations(batch):
    return [op for op in batch if op.index != RIVER_INDEX]


def checkpoint_of(batch):
    ops = [op for op in batch if op.index == RIVER_INDEX]
    assert len(ops) <= 1
    return ops[0].doc["mydb"]["last_seq"] if ops else None


@pytest.fixture
def stop_event():
    return threading.Event()


@pytest.fixture
def event_queue(stop_event):
    return BoundedEventQueue(100, stop_event)


@pytest.fixture
def mock_sink():
    sink = Mock()
    sink.submit.return_value = BulkResult()
    return sink


@pytest.fixture
def checkpoint_store():
    client = Mock()
    client.get.side_effect = NotFoundError(404, "not_found", {})
    return CheckpointStore(client, river_index=RIVER_INDEX, river_name="my_river", database="mydb")


@pytest.fixture
def make_indexer(event_queue, mock_sink, checkpoint_store, stop_event):
    def factory(**overrides):
        kwargs = dict(
            event_queue=event_queue,
            sink=mock_sink,
            checkpoint_store=checkpoint_store,
            stop_event=stop_event,
            database="mydb",
            index_name="mydb",
            bulk_size=100,
            bulk_timeout=0.01,
        )
        kwargs.update(overrides)
        return BatchIndexer(**kwargs)
    return factory


def run_batch(indexer, event_queue, lines):
    for line in lines:
        event_queue.put(line)
    return indexer.index_batch(event_queue.take())


class TestClassification:
    """Test classification of single feed lines."""

    def test_document_becomes_upsert(self, make_indexer):
        indexer = make_indexer()
        result = indexer.classify(change(1, "a", doc={"_id": "a", "title": "x"}))

        assert result.outcome == LineOutcome.INDEXED
        assert result.seq == 1
        assert result.operation == IndexOperation(index="mydb", id="a", doc={"_id": "a", "title": "x"})

    def test_deleted_wins_over_doc(self, make_indexer):
        """A deleted record always produces a delete, even with a body."""
        indexer = make_indexer()
        result = indexer.classify(change(2, "a", deleted=True, doc={"_id": "a", "_deleted": True}))

        assert result.outcome == LineOutcome.DELETED
        assert result.operation == DeleteOperation(index="mydb", id="a")

    def test_design_document_skipped_but_checkpointed(self, make_indexer):
        indexer = make_indexer()
        result = indexer.classify(change(3, "_design/app", doc={"views": {}}))

        assert result.outcome == LineOutcome.DESIGN_DOC
        assert result.operation is None
        assert result.seq == 3

    def test_unparseable_line(self, make_indexer, caplog):
        indexer = make_indexer()
        with caplog.at_level(logging.WARNING):
            result = indexer.classify('{"seq": 4, "id": ')

        assert result.outcome == LineOutcome.PARSE_ERROR
        assert not result.outcome.advances_checkpoint
        assert "Failed to parse" in caplog.text

    def test_non_object_line(self, make_indexer):
        assert make_indexer().classify('[1, 2]').outcome == LineOutcome.PARSE_ERROR

    def test_error_marker(self, make_indexer):
        indexer = make_indexer()
        result = indexer.classify(json.dumps({"error": "not_found", "reason": "missing"}))

        assert result.outcome == LineOutcome.ERROR_MARKER
        assert result.operation is None

    def test_missing_id_is_malformed(self, make_indexer):
        result = make_indexer().classify(json.dumps({"seq": 9}))
        assert result.outcome == LineOutcome.ERROR_MARKER

    def test_unknown_change_logged_and_checkpointed(self, make_indexer, caplog):
        indexer = make_indexer()
        with caplog.at_level(logging.WARNING):
            result = indexer.classify(change(5, "a"))

        assert result.outcome == LineOutcome.UNKNOWN
        assert result.seq == 5
        assert result.operation is None
        assert "unknown change" in caplog.text

    def test_attachments_removed_when_configured(self, make_indexer):
        indexer = make_indexer(ignore_attachments=True)
        doc = {"_id": "a", "_attachments": {"f.txt": {"stub": True}}, "title": "x"}

        result = indexer.classify(change(1, "a", doc=doc))

        assert result.operation.doc == {"_id": "a", "title": "x"}

    def test_attachments_kept_by_default(self, make_indexer):
        doc = {"_id": "a", "_attachments": {"f.txt": {"stub": True}}}
        result = make_indexer().classify(change(1, "a", doc=doc))
        assert "_attachments" in result.operation.doc

    def test_per_event_overrides(self, make_indexer):
        indexer = make_indexer(index_type="doc")
        line = change(1, "a", doc={"_id": "a"}, _index="other", _routing="r1", _parent="p1")

        op = indexer.classify(line).operation

        assert (op.index, op.type, op.routing, op.parent) == ("other", "doc", "r1", "p1")

    def test_defaults_used_without_overrides(self, make_indexer):
        op = make_indexer(index_type="doc").classify(change(1, "a", deleted=True)).operation
        assert (op.index, op.type, op.routing, op.parent) == ("mydb", "doc", None, None)


class TestTransform:
    """Test transform hook handling."""

    def test_transform_can_modify_event(self, make_indexer):
        def add_field(event):
            event.doc["indexed_by"] = "river"
            event.index = "routed"
            return event

        indexer = make_indexer(transform=CallableTransform(add_field))
        op = indexer.classify(change(1, "a", doc={"_id": "a"})).operation

        assert op.index == "routed"
        assert op.doc == {"_id": "a", "indexed_by": "river"}

    def test_transform_returning_none_skips(self, make_indexer):
        indexer = make_indexer(transform=CallableTransform(lambda event: None))
        result = indexer.classify(change(1, "a", doc={"_id": "a"}))

        assert result.outcome == LineOutcome.IGNORED
        assert result.seq == 1

    def test_ignore_flag_skips(self, make_indexer):
        def ignore(event):
            event.ignore = True
            return event

        result = make_indexer(transform=CallableTransform(ignore)).classify(change(1, "a", deleted=True))
        assert result.outcome == LineOutcome.IGNORED
        assert result.operation is None

    def test_transform_not_applied_to_design_docs(self, make_indexer):
        transform = Mock()
        make_indexer(transform=transform).classify(change(1, "_design/x", doc={}))
        transform.transform.assert_not_called()

    def test_transform_failure_skips_event_permanently(self, make_indexer, event_queue, mock_sink):
        """A failing transform on seq 7 drops the event but still checkpoints 7."""
        def explode_on_seven(event):
            if event.seq == 7:
                raise KeyError("missing field")
            return event

        indexer = make_indexer(transform=CallableTransform(explode_on_seven))
        batch = run_batch(indexer, event_queue, [
            change(6, "a", doc={"_id": "a"}),
            change(7, "b", doc={"_id": "b"}),
        ])

        assert [op.id for op in mutations(batch)] == ["a"]
        assert checkpoint_of(batch) == "7"
        mock_sink.submit.assert_called_once_with(batch)

    def test_hook_raising_unexpected_error_is_contained(self, make_indexer):
        hook = Mock()
        hook.transform.side_effect = RuntimeError("boom")

        result = make_indexer(transform=hook).classify(change(8, "a", doc={}))

        assert result.outcome == LineOutcome.TRANSFORM_ERROR
        assert result.seq == 8

    def test_transform_error_outcome(self, make_indexer):
        hook = Mock()
        hook.transform.side_effect = TransformError("bad doc")
        assert make_indexer(transform=hook).classify(change(8, "a", doc={})).outcome == LineOutcome.TRANSFORM_ERROR


class TestBatching:
    """Test batch accumulation and submission."""

    def test_scenario_five_records(self, make_indexer, event_queue, mock_sink):
        """seq 1..5 with a design doc at 3 and a delete at 5."""
        indexer = make_indexer()
        batch = run_batch(indexer, event_queue, [
            change(1, "doc-1", doc={"_id": "doc-1"}),
            change(2, "doc-2", doc={"_id": "doc-2"}),
            change(3, "_design/app", doc={"_id": "_design/app"}),
            change(4, "doc-4", doc={"_id": "doc-4"}),
            change(5, "doc-9", deleted=True),
        ])

        ops = mutations(batch)
        assert len(ops) == 4
        assert [type(op) for op in ops] == [IndexOperation, IndexOperation, IndexOperation, DeleteOperation]
        assert [op.id for op in ops] == ["doc-1", "doc-2", "doc-4", "doc-9"]
        assert checkpoint_of(batch) == "5"
        assert batch[-1].index == RIVER_INDEX
        mock_sink.submit.assert_called_once_with(batch)

    def test_design_doc_seq_reaches_checkpoint(self, make_indexer, event_queue):
        batch = run_batch(make_indexer(), event_queue, [
            change(1, "a", doc={}),
            change(2, "_design/app", doc={}),
        ])
        assert checkpoint_of(batch) == "2"
        assert len(mutations(batch)) == 1

    def test_parse_error_does_not_move_checkpoint(self, make_indexer, event_queue, mock_sink):
        batch = run_batch(make_indexer(), event_queue, ["garbage"])

        assert batch == []
        mock_sink.submit.assert_not_called()

    def test_checkpoint_is_last_seq_not_last_parseable(self, make_indexer, event_queue):
        batch = run_batch(make_indexer(), event_queue, [
            change(1, "a", doc={}),
            "garbage",
        ])
        assert checkpoint_of(batch) == "1"

    def test_bulk_size_bounds_batch(self, make_indexer, event_queue, mock_sink):
        indexer = make_indexer(bulk_size=2)
        for i in range(1, 6):
            event_queue.put(change(i, f"d{i}", doc={}))

        first = indexer.index_batch(event_queue.take())
        second = indexer.index_batch(event_queue.take())

        assert [op.id for op in mutations(first)] == ["d1", "d2"]
        assert checkpoint_of(first) == "2"
        assert [op.id for op in mutations(second)] == ["d3", "d4"]
        assert checkpoint_of(second) == "4"
        assert len(event_queue) == 1

    def test_checkpoints_are_monotonic(self, make_indexer, event_queue):
        indexer = make_indexer(bulk_size=3)
        for i in range(1, 21):
            doc_id = "_design/x" if i % 4 == 0 else f"d{i}"
            event_queue.put(change(i, doc_id, doc={}))

        checkpoints = []
        while len(event_queue):
            checkpoints.append(int(checkpoint_of(indexer.index_batch(event_queue.take()))))

        assert checkpoints == sorted(checkpoints)
        assert checkpoints[-1] == 20

    def test_composite_seq_serialized_as_json_array(self, make_indexer, event_queue):
        batch = run_batch(make_indexer(), event_queue, [change([7, "g1AAAA"], "a", doc={})])
        assert checkpoint_of(batch) == '[7,"g1AAAA"]'

    def test_checkpoint_serialization_failure_still_submits_mutations(
        self, make_indexer, event_queue, mock_sink, checkpoint_store, caplog
    ):
        indexer = make_indexer()
        with patch.object(checkpoint_store, 'write', side_effect=CheckpointSerializationError("bad seq")):
            with caplog.at_level(logging.ERROR):
                batch = run_batch(indexer, event_queue, [change(1, "a", doc={})])

        assert [op.id for op in batch] == ["a"]
        mock_sink.submit.assert_called_once()
        assert "last_seq" in caplog.text

    def test_sink_batch_failure_is_logged_not_raised(self, make_indexer, event_queue, mock_sink, caplog):
        mock_sink.submit.side_effect = SinkBatchError("cluster unavailable")

        with caplog.at_level(logging.WARNING):
            run_batch(make_indexer(), event_queue, [change(1, "a", doc={})])

        assert "Failed to execute bulk" in caplog.text

    def test_partial_failure_is_logged(self, make_indexer, event_queue, mock_sink, caplog):
        mock_sink.submit.return_value = BulkResult(failures=[
            {"_index": "mydb", "_id": "a", "status": 400, "error": {"type": "mapper_parsing_exception"}}
        ])

        with caplog.at_level(logging.WARNING):
            run_batch(make_indexer(), event_queue, [change(1, "a", doc={})])

        assert "mapper_parsing_exception" in caplog.text


class TestCheckpointOrdering:
    """Test that replayed lines never move the checkpoint backwards."""

    @pytest.mark.parametrize("seq, expected", [
        (42, 42),
        ("42", 42),
        ("42-g1AAAAFTeJzLYWBg", 42),
        ([42, "g1AAAA"], 42),
        ("now", None),
        ([], None),
        (True, None),
    ])
    def test_seq_number(self, seq, expected):
        assert seq_number(seq) == expected

    def test_greatest_seq_in_batch_is_checkpointed(self, make_indexer, event_queue):
        batch = run_batch(make_indexer(), event_queue, [
            change(4, "d", doc={}),
            change(5, "e", doc={}),
            change(3, "c", doc={}),
        ])
        assert checkpoint_of(batch) == "5"
        assert [op.id for op in mutations(batch)] == ["d", "e", "c"]

    def test_opaque_seqs_fall_back_to_arrival_order(self, make_indexer, event_queue):
        batch = run_batch(make_indexer(), event_queue, [
            change("x-first", "a", doc={}),
            change("y-second", "b", doc={}),
        ])
        assert checkpoint_of(batch) == "y-second"

    def test_replayed_batch_does_not_move_checkpoint_back(self, make_indexer, event_queue, mock_sink):
        indexer = make_indexer(bulk_size=2)
        committed = run_batch(indexer, event_queue, [change(4, "d", doc={}), change(5, "e", doc={})])
        assert checkpoint_of(committed) == "5"

        replayed = run_batch(indexer, event_queue, [change(3, "c", doc={}), change(4, "d", doc={})])

        assert checkpoint_of(replayed) is None
        assert [op.id for op in mutations(replayed)] == ["c", "d"]
        assert mock_sink.submit.call_count == 2

        resumed = run_batch(indexer, event_queue, [change(6, "f", doc={})])
        assert checkpoint_of(resumed) == "6"

    def test_failed_batch_does_not_raise_high_water(self, make_indexer, event_queue, mock_sink):
        indexer = make_indexer()
        mock_sink.submit.side_effect = SinkBatchError("cluster unavailable")
        run_batch(indexer, event_queue, [change(9, "i", doc={})])

        mock_sink.submit.side_effect = None
        batch = run_batch(indexer, event_queue, [change(7, "g", doc={})])

        assert checkpoint_of(batch) == "7"

    def test_rejected_checkpoint_item_does_not_raise_high_water(self, make_indexer, event_queue, mock_sink):
        indexer = make_indexer()
        mock_sink.submit.return_value = BulkResult(failures=[
            {"_index": RIVER_INDEX, "_id": "my_river_seq", "status": 429, "error": {"type": "es_rejected"}}
        ])
        run_batch(indexer, event_queue, [change(9, "i", doc={})])

        mock_sink.submit.return_value = BulkResult()
        batch = run_batch(indexer, event_queue, [change(7, "g", doc={})])

        assert checkpoint_of(batch) == "7"


class TestIndexerRun:
    """Test the indexer thread loop."""

    def test_run_indexes_until_stopped(self, make_indexer, event_queue, mock_sink, stop_event):
        submitted = threading.Event()
        mock_sink.submit.side_effect = lambda batch: submitted.set() or BulkResult()
        indexer = make_indexer()

        thread = threading.Thread(target=indexer.run, daemon=True)
        thread.start()
        event_queue.put(change(1, "a", doc={}))

        assert submitted.wait(2)
        stop_event.set()
        thread.join(timeout=2)

        assert not thread.is_alive()

    def test_run_survives_unexpected_sink_error(self, make_indexer, event_queue, mock_sink, stop_event):
        calls = []
        first_failed = threading.Event()
        second_done = threading.Event()

        def flaky(batch):
            calls.append(batch)
            if len(calls) == 1:
                first_failed.set()
                raise RuntimeError("unexpected")
            second_done.set()
            return BulkResult()

        mock_sink.submit.side_effect = flaky
        indexer = make_indexer(bulk_timeout=0)

        thread = threading.Thread(target=indexer.run, daemon=True)
        thread.start()
        event_queue.put(change(1, "a", doc={}))
        assert first_failed.wait(2)
        event_queue.put(change(2, "b", doc={}))

        assert second_done.wait(2)
        stop_event.set()
        thread.join(timeout=2)

        assert [op.id for op in mutations(calls[1])] == ["b"]

    def test_run_exits_immediately_when_stopped(self, make_indexer, stop_event, mock_sink):
        stop_event.set()
        make_indexer().run()
        mock_sink.submit.assert_not_called()
