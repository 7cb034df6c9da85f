"""
Snapshot persistence for the node registry and block tracker.

Each structure lives in its own JSON document. Writes go to a temporary file
in the same directory and are moved over the target, so a reader or a crash
mid-write never observes a torn snapshot.
"""

import os
import json
import logging
import fcntl
import tempfile
import shutil
from typing import Optional, Tuple

from telemetry_state import BlockTracker, NodeRegistry

logger = logging.getLogger(__name__)


class StateStore:
    def __init__(self, nodes_file: str, blocks_file: str):
        self.nodes_file = nodes_file
        self.blocks_file = blocks_file

    def _read_json(self, path: str) -> Optional[dict]:
        if not os.path.exists(path):
            logger.info("No snapshot at %s, starting empty", path)
            return None

        try:
            with open(path, 'r') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)  # Shared lock for reading
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Could not load snapshot %s: %s. Starting fresh.", path, str(e))
            return None

        if not isinstance(data, dict):
            logger.warning("Snapshot %s is not a JSON object. Starting fresh.", path)
            return None

        return data

    def load_nodes(self) -> NodeRegistry:
        data = self._read_json(self.nodes_file)
        if data is None:
            return NodeRegistry()

        try:
            registry = NodeRegistry.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
            logger.warning("Corrupt node snapshot %s: %s. Starting fresh.", self.nodes_file, str(e))
            return NodeRegistry()

        logger.info("Loaded %d nodes from %s", len(registry), self.nodes_file)
        return registry

    def load_blocks(self) -> BlockTracker:
        data = self._read_json(self.blocks_file)
        if data is None:
            return BlockTracker()

        try:
            tracker = BlockTracker.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
            logger.warning("Corrupt block snapshot %s: %s. Starting fresh.", self.blocks_file, str(e))
            return BlockTracker()

        logger.info("Loaded %d blocks from %s", len(tracker), self.blocks_file)
        return tracker

    def load(self) -> Tuple[NodeRegistry, BlockTracker]:
        """Load both snapshots; a missing or corrupt file yields an empty structure."""
        return self.load_nodes(), self.load_blocks()

    def _write_json(self, path: str, data: dict) -> None:
        """Write JSON atomically: temp file in the target directory, then move."""
        directory = os.path.dirname(path) or '.'
        os.makedirs(directory, exist_ok=True)

        temp_file = None
        try:
            with tempfile.NamedTemporaryFile(mode='w', dir=directory,
                                             prefix=os.path.basename(path) + '.tmp',
                                             delete=False) as f:
                temp_file = f.name
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)  # Exclusive lock for writing
                json.dump(data, f)

            shutil.move(temp_file, path)

        except Exception as e:
            logger.error("Failed to save snapshot %s: %s", path, str(e))
            if temp_file and os.path.exists(temp_file):
                os.unlink(temp_file)
            raise

    def save(self, registry: NodeRegistry, tracker: BlockTracker) -> None:
        """Persist both snapshots. Raises OSError if either write fails."""
        self._write_json(self.nodes_file, registry.to_dict())
        self._write_json(self.blocks_file, tracker.to_dict())
        logger.debug("Saved %d nodes and %d blocks", len(registry), len(tracker))
