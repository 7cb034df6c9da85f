#!/usr/bin/env python3
"""
Block Author Tracker

Watches a live node telemetry feed and infers, for each new block, which
node(s) most likely authored it: the node(s) reporting the lowest block
propagation time. Results are appended to a CSV file.

Features:
- Tie-aware tracking of the lowest propagation time per block hash
- Early emission on quorum, timeout, or when newer blocks supersede a block
- Bounded memory (most recent 100 blocks)
- Crash recovery from atomically written JSON snapshots
- Automatic reconnect to the telemetry feed
"""

import os
import csv
import time
import asyncio
import logging
import argparse
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from dotenv import load_dotenv

from state_store import StateStore
from telemetry_feed import DEFAULT_RECONNECT_DELAY, TelemetryFeed
from telemetry_messages import BlockImportMessage, NodeInfoMessage, parse_line
from telemetry_state import (
    RETENTION_WINDOW,
    BlockTracker,
    EmittedRow,
    NodeRegistry,
    apply_retention,
    collect_rows,
    select_ready,
)

logger = logging.getLogger(__name__)

DEFAULT_TELEMETRY_URL = "wss://tc0.res.fm/feed"
DEFAULT_GENESIS_HASH = "0xdbacc01ae41b79388135ccd5d0ebe81eb0905260344256e6f4003bb8e75a91b5"
DEFAULT_OUTPUT_PATH = "./data/res-likely-authors.csv"
DEFAULT_NODES_FILE = "./data/telemetry-nodes.json"
DEFAULT_BLOCKS_FILE = "./data/telemetry-blocks.json"
DEFAULT_LOG_FILE = "block_author_tracker.log"

CSV_HEADER = ["timestamp", "node_name", "node_id", "block_number", "block_hash", "propagation_time"]


def configure_logging(log_file: Optional[str] = DEFAULT_LOG_FILE, debug: bool = False) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


@dataclass
class TrackerConfig:
    telemetry_url: str = DEFAULT_TELEMETRY_URL
    genesis_hash: str = DEFAULT_GENESIS_HASH
    output_path: str = DEFAULT_OUTPUT_PATH
    nodes_file: str = DEFAULT_NODES_FILE
    blocks_file: str = DEFAULT_BLOCKS_FILE
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    save_interval: float = 0.0
    log_file: str = DEFAULT_LOG_FILE
    debug: bool = False

    @classmethod
    def from_env(cls) -> 'TrackerConfig':
        """Build configuration from environment variables (and a .env file if present)."""
        load_dotenv()
        return cls(
            telemetry_url=os.getenv('TELEMETRY_URL', DEFAULT_TELEMETRY_URL),
            genesis_hash=os.getenv('GENESIS_HASH', DEFAULT_GENESIS_HASH),
            output_path=os.getenv('OUTPUT_PATH', DEFAULT_OUTPUT_PATH),
            nodes_file=os.getenv('NODES_FILE', DEFAULT_NODES_FILE),
            blocks_file=os.getenv('BLOCKS_FILE', DEFAULT_BLOCKS_FILE),
            reconnect_delay=float(os.getenv('RECONNECT_DELAY', str(DEFAULT_RECONNECT_DELAY))),
            save_interval=float(os.getenv('SAVE_INTERVAL', '0')),
            log_file=os.getenv('LOG_FILE', DEFAULT_LOG_FILE),
            debug=os.getenv('LOG_LEVEL', 'INFO').upper() == 'DEBUG'
        )


class CsvResultSink:
    """Append-only CSV record of emitted (block, likely author) rows."""

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(path) or os.path.getsize(path) == 0
        logger.info("Initializing CSV writer at %s", path)
        self._file = open(path, 'a', newline='')
        self._writer = csv.writer(self._file)

        if is_new:
            self._writer.writerow(CSV_HEADER)
            self._file.flush()

    def append(self, rows: List[EmittedRow]) -> None:
        if not rows:
            return

        for row in rows:
            self._writer.writerow(row.as_csv_row())
        self._file.flush()
        logger.info("Wrote %d records to CSV", len(rows))

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


class BlockAuthorTracker:
    """
    Consumes telemetry feed lines and maintains node/block state.

    Each line is processed to completion before the next one is read: registry
    and tracker updates, flush of ready blocks to the sink, retention, and
    (depending on the save interval) a snapshot.
    """

    def __init__(self, store: StateStore, sink: CsvResultSink,
                 save_interval: float = 0.0,
                 retention_window: int = RETENTION_WINDOW,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.sink = sink
        self.save_interval = save_interval
        self.retention_window = retention_window
        self.clock = clock

        self.registry, self.tracker = store.load()
        self.last_save = self.clock()
        self.dirty = False

        self.stats: Dict[str, int] = {
            'lines_received': 0,
            'invalid_lines': 0,
            'malformed_pairs': 0,
            'node_updates': 0,
            'block_reports': 0,
            'rows_written': 0,
            'blocks_evicted': 0,
            'unemitted_evicted': 0,
            'save_failures': 0,
            'sink_failures': 0
        }

    def _now(self) -> int:
        return int(self.clock())

    def handle_node_info(self, message: NodeInfoMessage) -> None:
        logger.debug("Storing node: idx=%d, name=%s, id=%s",
                     message.node_index, message.name, message.peer_id)
        self.registry.upsert(message.node_index, message.name, message.peer_id)
        self.stats['node_updates'] += 1

    def handle_block_import(self, message: BlockImportMessage, now: int) -> None:
        node_name, node_id = self.registry.identity(message.node_index)
        logger.debug("Block details: number=%d, hash=%s, prop_time=%d, node=%s",
                     message.block_number, message.block_hash, message.propagation_ms, node_name)

        self.tracker.record_report(
            block_hash=message.block_hash,
            block_number=message.block_number,
            node_index=message.node_index,
            node_name=node_name,
            node_id=node_id,
            propagation_ms=message.propagation_ms,
            now=now
        )
        self.stats['block_reports'] += 1

    def flush(self, now: int) -> List[EmittedRow]:
        """Emit rows for every ready block, then apply retention."""
        ready = select_ready(self.tracker, now)
        rows = collect_rows(self.tracker, ready)

        try:
            self.sink.append(rows)
        except OSError as e:
            # Blocks stay unemitted and are retried on the next line
            self.stats['sink_failures'] += 1
            logger.error("Error writing %d records to CSV: %s", len(rows), str(e))
            rows, ready = [], []

        for block_hash in ready:
            self.tracker.mark_emitted(block_hash)
        self.stats['rows_written'] += len(rows)

        unemitted = [h for h in self.tracker if not self.tracker.get(h).emitted]
        evicted = apply_retention(self.tracker, self.retention_window)
        if evicted:
            lost = len(set(evicted) & set(unemitted))
            self.stats['blocks_evicted'] += len(evicted)
            self.stats['unemitted_evicted'] += lost
            if lost:
                logger.warning("Retention evicted %d blocks, %d of them never emitted", len(evicted), lost)
            else:
                logger.debug("Retention evicted %d blocks", len(evicted))

        if ready or evicted:
            self.dirty = True

        return rows

    def process_line(self, line: str) -> List[EmittedRow]:
        """Process one raw feed line and return the rows it caused to be emitted."""
        self.stats['lines_received'] += 1
        result = parse_line(line)

        if result.well_formed:
            self.stats['malformed_pairs'] += result.malformed
        else:
            self.stats['invalid_lines'] += 1

        now = self._now()
        saw_block = False
        for message in result.messages:
            if isinstance(message, NodeInfoMessage):
                self.handle_node_info(message)
            else:
                self.handle_block_import(message, now)
                saw_block = True
            self.dirty = True

        # Readiness is re-evaluated on every line so timeouts trip without new block imports
        rows = self.flush(now)
        if saw_block or rows:
            logger.info("Tracking %d blocks, %d outputs ready", len(self.tracker), len(rows))

        self.maybe_save(force=bool(rows))
        return rows

    def maybe_save(self, force: bool = False) -> bool:
        if not self.dirty:
            return False
        if not force and self.clock() - self.last_save < self.save_interval:
            return False
        return self.save()

    def save(self) -> bool:
        """Persist state; failures are logged and the tracker keeps running in memory."""
        try:
            self.store.save(self.registry, self.tracker)
        except OSError as e:
            self.stats['save_failures'] += 1
            logger.error("Error saving state, continuing in memory: %s", str(e))
            return False

        self.last_save = self.clock()
        self.dirty = False
        return True

    def status_summary(self) -> str:
        return ("nodes=%d blocks=%d pending=%d lines=%d invalid=%d malformed=%d reports=%d "
                "rows=%d evicted=%d unemitted_evicted=%d save_failures=%d sink_failures=%d") % (
            len(self.registry), len(self.tracker), self.tracker.pending_count(),
            self.stats['lines_received'], self.stats['invalid_lines'], self.stats['malformed_pairs'],
            self.stats['block_reports'], self.stats['rows_written'], self.stats['blocks_evicted'],
            self.stats['unemitted_evicted'], self.stats['save_failures'], self.stats['sink_failures'])

    async def run(self, feed: TelemetryFeed, max_attempts: Optional[int] = None) -> None:
        logger.info("Starting telemetry monitoring: %s (genesis %s)", feed.url, feed.genesis_hash)
        async for line in feed.lines(max_attempts=max_attempts):
            logger.debug("Received line: %.100s...", line)
            try:
                self.process_line(line)
            except Exception as e:
                logger.warning("Failed to process message: %s", str(e))

    def shutdown(self) -> None:
        self.save()
        self.sink.close()
        logger.info("Tracker stopped: %s", self.status_summary())


def parse_args(argv: Optional[List[str]] = None, defaults: Optional[TrackerConfig] = None) -> TrackerConfig:
    defaults = defaults or TrackerConfig()
    parser = argparse.ArgumentParser(
        description="Monitor block production and propagation times from a telemetry feed")
    parser.add_argument("--telemetry-url", default=defaults.telemetry_url,
                        help="Telemetry WebSocket URL (default: %(default)s)")
    parser.add_argument("--genesis-hash", default=defaults.genesis_hash,
                        help="Genesis hash of the chain to monitor (default: %(default)s)")
    parser.add_argument("--output", dest="output_path", default=defaults.output_path,
                        help="CSV output path (default: %(default)s)")
    parser.add_argument("--nodes-file", default=defaults.nodes_file)
    parser.add_argument("--blocks-file", default=defaults.blocks_file)
    parser.add_argument("--reconnect-delay", type=float, default=defaults.reconnect_delay)
    parser.add_argument("--save-interval", type=float, default=defaults.save_interval,
                        help="Minimum seconds between snapshots; 0 saves after every message")
    parser.add_argument("--log-file", default=defaults.log_file)
    parser.add_argument("--debug", action="store_true", default=defaults.debug)

    args = parser.parse_args(argv)
    return TrackerConfig(**vars(args))


def main(argv: Optional[List[str]] = None):
    """Main execution function."""
    config = parse_args(argv, TrackerConfig.from_env())
    configure_logging(config.log_file, config.debug)

    store = StateStore(config.nodes_file, config.blocks_file)
    sink = CsvResultSink(config.output_path)
    tracker = BlockAuthorTracker(store, sink, save_interval=config.save_interval)
    feed = TelemetryFeed(config.telemetry_url, config.genesis_hash, config.reconnect_delay)

    try:
        asyncio.run(tracker.run(feed))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        tracker.shutdown()


if __name__ == "__main__":
    main()
