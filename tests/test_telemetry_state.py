"""Tests for block tracking, flush selection and retention."""

import math

from telemetry_state import (
    QUORUM,
    UNKNOWN_NODE_ID,
    UNKNOWN_NODE_NAME,
    BlockRecord,
    BlockTracker,
    NodeRegistry,
    apply_retention,
    flush_rows,
    select_ready,
)


def report(tracker, block_hash, number, node, prop, now=1000):
    return tracker.record_report(block_hash, number, node, f"node{node}", f"id{node}", prop, now)


class TestNodeRegistry:
    def test_upsert_overwrites(self):
        registry = NodeRegistry()
        registry.upsert(1, "alice", "peerA")
        registry.upsert(1, "bob", "peerB")

        info = registry.lookup(1)
        assert info.name == "bob"
        assert info.peer_id == "peerB"
        assert len(registry) == 1

    def test_lookup_unknown(self):
        registry = NodeRegistry()
        assert registry.lookup(42) is None
        assert 42 not in registry

    def test_identity_placeholders(self):
        registry = NodeRegistry()
        registry.upsert(1, "alice", "peerA")

        assert registry.identity(1) == ("alice", "peerA")
        name, node_id = registry.identity(7)
        assert name == UNKNOWN_NODE_NAME
        assert node_id == UNKNOWN_NODE_ID
        assert name and node_id

    def test_dict_keys_are_strings(self):
        registry = NodeRegistry()
        registry.upsert(5, "alice", "peerA")
        data = registry.to_dict()

        assert data == {"5": {"name": "alice", "peer_id": "peerA"}}
        assert NodeRegistry.from_dict(data).nodes == registry.nodes


class TestRecordReport:
    def test_new_record_initialized(self):
        tracker = BlockTracker()
        record = report(tracker, "0xAA", 100, 1, 50, now=1234)

        assert record.block_number == 100
        assert record.first_seen == 1234
        assert record.report_count == 1
        assert record.lowest_propagation_ms == 50
        assert [r.node_index for r in record.reporters] == [1]
        assert record.emitted is False

    def test_tie_appends_in_arrival_order(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50)
        report(tracker, "0xAA", 100, 2, 80)
        record = report(tracker, "0xAA", 100, 3, 50)

        assert record.lowest_propagation_ms == 50
        assert [r.node_index for r in record.reporters] == [1, 3]
        assert record.report_count == 3

    def test_lower_time_replaces_reporters(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50)
        report(tracker, "0xAA", 100, 2, 50)
        record = report(tracker, "0xAA", 100, 3, 20)

        assert record.lowest_propagation_ms == 20
        assert [r.node_index for r in record.reporters] == [3]

    def test_duplicate_node_at_tie_not_added(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50)
        record = report(tracker, "0xAA", 100, 1, 50)

        assert len(record.reporters) == 1
        assert record.report_count == 2

    def test_minimum_over_arbitrary_sequence(self):
        tracker = BlockTracker()
        times = [90, 70, 120, 70, 30, 45, 30, 200]
        for node, prop in enumerate(times):
            record = report(tracker, "0xAB", 7, node, prop)

        assert record.lowest_propagation_ms == min(times)
        assert [r.node_index for r in record.reporters] == [4, 6]
        assert record.report_count == len(times)
        indices = [r.node_index for r in record.reporters]
        assert len(indices) == len(set(indices))

    def test_reporter_keeps_observation_time(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50, now=10)
        record = report(tracker, "0xAA", 100, 2, 50, now=12)

        assert [r.observed_at for r in record.reporters] == [10, 12]


class TestSelectReady:
    def test_quorum(self):
        tracker = BlockTracker()
        for node in range(QUORUM - 1):
            report(tracker, "0xAA", 100, node, 50, now=1000)
        assert select_ready(tracker, 1000) == []

        report(tracker, "0xAA", 100, 9, 60, now=1000)
        assert select_ready(tracker, 1000) == ["0xAA"]

    def test_timeout(self):
        tracker = BlockTracker()
        report(tracker, "0xBB", 50, 1, 40, now=1000)

        assert select_ready(tracker, 1003) == []
        assert select_ready(tracker, 1004) == ["0xBB"]

    def test_superseded(self):
        tracker = BlockTracker()
        report(tracker, "0xCC", 10, 1, 40, now=1000)
        report(tracker, "0xD1", 11, 1, 40, now=1000)
        assert "0xCC" not in select_ready(tracker, 1000)

        report(tracker, "0xD2", 12, 1, 40, now=1000)
        assert select_ready(tracker, 1000) == ["0xCC"]

    def test_emitted_never_ready(self):
        tracker = BlockTracker()
        for node in range(QUORUM):
            report(tracker, "0xAA", 100, node, 50)
        tracker.mark_emitted("0xAA")

        assert select_ready(tracker, 5000) == []

    def test_empty_tracker(self):
        tracker = BlockTracker()
        assert tracker.max_block_number() == 0
        assert select_ready(tracker, 1000) == []


class TestFlushRows:
    def test_one_row_per_tied_reporter(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50)
        report(tracker, "0xAA", 100, 2, 80)
        report(tracker, "0xAA", 100, 3, 50)

        rows = flush_rows(tracker, select_ready(tracker, 1000))

        assert [(r.block_hash, r.block_number, r.propagation_time) for r in rows] == [
            ("0xAA", 100, 50), ("0xAA", 100, 50)]
        assert [r.node_name for r in rows] == ["node1", "node3"]
        assert tracker.get("0xAA").emitted is True

    def test_emission_happens_once(self):
        tracker = BlockTracker()
        for node in range(QUORUM):
            report(tracker, "0xAA", 100, node, 50)

        assert len(flush_rows(tracker, ["0xAA"])) == QUORUM
        report(tracker, "0xAA", 100, 8, 10)
        assert flush_rows(tracker, ["0xAA"]) == []
        assert select_ready(tracker, 9999) == []

    def test_csv_row_format(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 100, 1, 50, now=77)
        row = flush_rows(tracker, ["0xAA"])[0]

        assert row.as_csv_row() == ["77", "node1", "id1", "100", "0xAA", "50"]


class TestRetention:
    def test_keeps_highest_numbers(self):
        tracker = BlockTracker()
        for number in range(150):
            report(tracker, f"0x{number:04x}", number, 1, 10)

        evicted = apply_retention(tracker)

        assert len(tracker) == 100
        assert len(evicted) == 50
        assert min(tracker.get(h).block_number for h in tracker) == 50

    def test_evicts_unemitted_records(self):
        tracker = BlockTracker()
        report(tracker, "0xold", 1, 1, 10)
        for number in range(2, 4):
            report(tracker, f"0x{number}", number, 1, 10)

        evicted = apply_retention(tracker, window=2)

        assert evicted == ["0xold"]
        assert "0xold" not in tracker

    def test_under_window_is_noop(self):
        tracker = BlockTracker()
        report(tracker, "0xAA", 1, 1, 10)
        assert apply_retention(tracker) == []
        assert len(tracker) == 1


def test_block_record_sentinel_round_trip():
    record = BlockRecord(block_number=3, first_seen=10)
    assert record.lowest_propagation_ms == math.inf

    data = record.to_dict()
    assert data['lowest_propagation_ms'] is None
    assert BlockRecord.from_dict(data) == record
