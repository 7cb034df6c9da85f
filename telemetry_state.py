"""
Block Propagation State

In-memory model of known telemetry nodes and in-flight blocks.
Tracks the lowest reported propagation time per block hash, the node(s)
that achieved it, and decides when a block's likely author(s) can be emitted.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

QUORUM = 3
FLUSH_TIMEOUT_SECONDS = 3
RETENTION_WINDOW = 100

UNKNOWN_NODE_NAME = "unknown_node"
UNKNOWN_NODE_ID = "unknown_id"

NO_PROPAGATION = math.inf


@dataclass
class NodeInfo:
    name: str
    peer_id: str


@dataclass
class Reporter:
    node_index: int
    node_name: str
    node_id: str
    observed_at: int

    def to_dict(self) -> dict:
        return {
            'node_index': self.node_index,
            'node_name': self.node_name,
            'node_id': self.node_id,
            'observed_at': self.observed_at
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Reporter':
        return cls(
            node_index=int(data['node_index']),
            node_name=str(data['node_name']),
            node_id=str(data['node_id']),
            observed_at=int(data['observed_at'])
        )


@dataclass
class BlockRecord:
    block_number: int
    first_seen: int
    lowest_propagation_ms: float = NO_PROPAGATION
    reporters: List[Reporter] = field(default_factory=list)
    report_count: int = 0
    emitted: bool = False

    def to_dict(self) -> dict:
        lowest = None if self.lowest_propagation_ms == NO_PROPAGATION else self.lowest_propagation_ms
        return {
            'block_number': self.block_number,
            'lowest_propagation_ms': lowest,
            'reporters': [r.to_dict() for r in self.reporters],
            'first_seen': self.first_seen,
            'report_count': self.report_count,
            'emitted': self.emitted
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'BlockRecord':
        lowest = data.get('lowest_propagation_ms')
        return cls(
            block_number=int(data['block_number']),
            first_seen=int(data['first_seen']),
            lowest_propagation_ms=NO_PROPAGATION if lowest is None else int(lowest),
            reporters=[Reporter.from_dict(r) for r in data.get('reporters', [])],
            report_count=int(data.get('report_count', 0)),
            emitted=bool(data.get('emitted', False))
        )


@dataclass
class EmittedRow:
    timestamp: int
    node_name: str
    node_id: str
    block_number: int
    block_hash: str
    propagation_time: int

    def as_csv_row(self) -> List[str]:
        return [
            str(self.timestamp),
            self.node_name,
            self.node_id,
            str(self.block_number),
            self.block_hash,
            str(self.propagation_time)
        ]


class NodeRegistry:
    """Node index -> identity, as announced by the feed."""

    def __init__(self, nodes: Optional[Dict[int, NodeInfo]] = None):
        self.nodes: Dict[int, NodeInfo] = dict(nodes) if nodes else {}

    def upsert(self, index: int, name: str, peer_id: str) -> None:
        # Feed indices are reused across reconnects; last write wins
        self.nodes[index] = NodeInfo(name=name, peer_id=peer_id)

    def lookup(self, index: int) -> Optional[NodeInfo]:
        return self.nodes.get(index)

    def identity(self, index: int) -> Tuple[str, str]:
        """Return (name, node_id) for an index, with placeholders for unknown nodes."""
        info = self.nodes.get(index)
        if info is None:
            return UNKNOWN_NODE_NAME, UNKNOWN_NODE_ID
        return info.name, info.peer_id

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, index: int) -> bool:
        return index in self.nodes

    def to_dict(self) -> Dict[str, dict]:
        return {
            str(index): {'name': info.name, 'peer_id': info.peer_id}
            for index, info in self.nodes.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, dict]) -> 'NodeRegistry':
        nodes = {}
        for index, info in data.items():
            nodes[int(index)] = NodeInfo(name=str(info['name']), peer_id=str(info['peer_id']))
        return cls(nodes)


class BlockTracker:
    """
    Block hash -> aggregation record.

    Keeps, for every tracked block, the lowest propagation time reported so far
    and every distinct node tied at that time, in arrival order.
    """

    def __init__(self, blocks: Optional[Dict[str, BlockRecord]] = None):
        self.blocks: Dict[str, BlockRecord] = dict(blocks) if blocks else {}

    def record_report(self, block_hash: str, block_number: int, node_index: int,
                      node_name: str, node_id: str, propagation_ms: int, now: int) -> BlockRecord:
        record = self.blocks.get(block_hash)
        if record is None:
            record = BlockRecord(block_number=block_number, first_seen=now)
            self.blocks[block_hash] = record
            logger.debug("New block tracked: number=%d, hash=%s", block_number, block_hash)

        record.report_count += 1

        if propagation_ms < record.lowest_propagation_ms:
            record.lowest_propagation_ms = propagation_ms
            record.reporters = [Reporter(node_index, node_name, node_id, now)]
        elif propagation_ms == record.lowest_propagation_ms:
            if not any(r.node_index == node_index for r in record.reporters):
                record.reporters.append(Reporter(node_index, node_name, node_id, now))

        return record

    def get(self, block_hash: str) -> Optional[BlockRecord]:
        return self.blocks.get(block_hash)

    def max_block_number(self) -> int:
        return max((r.block_number for r in self.blocks.values()), default=0)

    def mark_emitted(self, block_hash: str) -> None:
        self.blocks[block_hash].emitted = True

    def pending_count(self) -> int:
        return sum(1 for r in self.blocks.values() if not r.emitted)

    def remove(self, block_hash: str) -> None:
        del self.blocks[block_hash]

    def __len__(self) -> int:
        return len(self.blocks)

    def __contains__(self, block_hash: str) -> bool:
        return block_hash in self.blocks

    def __iter__(self) -> Iterator[str]:
        return iter(self.blocks)

    def to_dict(self) -> Dict[str, dict]:
        return {block_hash: record.to_dict() for block_hash, record in self.blocks.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, dict]) -> 'BlockTracker':
        return cls({str(block_hash): BlockRecord.from_dict(record) for block_hash, record in data.items()})


def select_ready(tracker: BlockTracker, now: int) -> List[str]:
    """
    Return the hashes of unemitted blocks that are ready to be flushed.

    A block is ready once it reached quorum, has been tracked for longer than
    the flush timeout, or is more than one block behind the highest tracked block.
    """
    max_block = tracker.max_block_number()
    ready = []

    for block_hash, record in tracker.blocks.items():
        if record.emitted:
            continue

        if (record.report_count >= QUORUM
                or now - record.first_seen > FLUSH_TIMEOUT_SECONDS
                or record.block_number < max_block - 1):
            logger.debug("Block %s ready for output: report_count=%d, age=%ds, block_num=%d, max_block=%d",
                         block_hash, record.report_count, now - record.first_seen,
                         record.block_number, max_block)
            ready.append(block_hash)

    return ready


def collect_rows(tracker: BlockTracker, block_hashes: List[str]) -> List[EmittedRow]:
    """Build one output row per tied reporter of each unemitted block, without marking it."""
    rows = []

    for block_hash in block_hashes:
        record = tracker.get(block_hash)
        if record is None or record.emitted:
            continue

        for reporter in record.reporters:
            rows.append(EmittedRow(
                timestamp=reporter.observed_at,
                node_name=reporter.node_name,
                node_id=reporter.node_id,
                block_number=record.block_number,
                block_hash=block_hash,
                propagation_time=int(record.lowest_propagation_ms)
            ))

    return rows


def flush_rows(tracker: BlockTracker, block_hashes: List[str]) -> List[EmittedRow]:
    """Build one output row per tied reporter and mark each block emitted."""
    rows = collect_rows(tracker, block_hashes)
    for block_hash in block_hashes:
        if block_hash in tracker:
            tracker.mark_emitted(block_hash)
    return rows


def apply_retention(tracker: BlockTracker, window: int = RETENTION_WINDOW) -> List[str]:
    """Keep only the `window` highest-numbered blocks; return the evicted hashes."""
    if len(tracker) <= window:
        return []

    # Stable sort: equal block numbers keep insertion order
    ordered = sorted(tracker.blocks.items(), key=lambda item: item[1].block_number, reverse=True)
    evicted = [block_hash for block_hash, _ in ordered[window:]]

    for block_hash in evicted:
        tracker.remove(block_hash)

    return evicted
