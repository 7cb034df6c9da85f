"""
Telemetry Feed Message Parsing

Turns raw feed lines into typed node-info and block-import messages.
A feed line is a JSON array of alternating (type_code, payload) pairs;
malformed pairs are skipped individually so one bad entry never hides the rest.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

logger = logging.getLogger(__name__)

NODE_INFO = 3
BLOCK_IMPORT = 6

# Minimum length of the details array inside node-info and block-import payloads
DETAILS_MIN_LENGTH = 5


@dataclass
class NodeInfoMessage:
    node_index: int
    name: str
    peer_id: str


@dataclass
class BlockImportMessage:
    node_index: int
    block_number: int
    block_hash: str
    propagation_ms: int


FeedMessage = Union[NodeInfoMessage, BlockImportMessage]


@dataclass
class ParseResult:
    messages: List[FeedMessage] = field(default_factory=list)
    malformed: int = 0
    well_formed: bool = True


def _is_int(value: Any) -> bool:
    # bool is an int subclass but never a valid index/number in the feed
    return isinstance(value, int) and not isinstance(value, bool)


def _split_payload(payload: Any) -> Optional[tuple]:
    if not isinstance(payload, list) or len(payload) < 2:
        return None

    node_index, details = payload[0], payload[1]
    if not _is_int(node_index) or node_index < 0:
        return None
    if not isinstance(details, list) or len(details) < DETAILS_MIN_LENGTH:
        return None

    return node_index, details


def parse_node_info(payload: Any) -> Optional[NodeInfoMessage]:
    """Parse a node-info payload: [index, [name, _, _, _, peer_id, ...]]."""
    parts = _split_payload(payload)
    if parts is None:
        return None

    node_index, details = parts
    name, peer_id = details[0], details[4]

    if isinstance(peer_id, list):
        if not peer_id or not all(isinstance(p, str) for p in peer_id):
            return None
        peer_id = ",".join(peer_id)

    if not isinstance(name, str) or not isinstance(peer_id, str):
        return None

    return NodeInfoMessage(node_index=node_index, name=name, peer_id=peer_id)


def parse_block_import(payload: Any) -> Optional[BlockImportMessage]:
    """Parse a block-import payload: [index, [number, hash, _, _, propagation_ms, ...]]."""
    parts = _split_payload(payload)
    if parts is None:
        return None

    node_index, details = parts
    block_number, block_hash, propagation_ms = details[0], details[1], details[4]

    if not _is_int(block_number) or block_number < 0:
        return None
    if not isinstance(block_hash, str) or not block_hash:
        return None
    if not _is_int(propagation_ms) or propagation_ms <= 0:
        return None

    return BlockImportMessage(
        node_index=node_index,
        block_number=block_number,
        block_hash=block_hash,
        propagation_ms=propagation_ms
    )


def parse_message(value: Any) -> ParseResult:
    """Classify every (type_code, payload) pair of an already-decoded feed message."""
    result = ParseResult()

    if not isinstance(value, list):
        logger.debug("Message is not an array: %s", type(value).__name__)
        result.well_formed = False
        return result

    # A trailing type code without a payload is ignored
    for i in range(0, len(value) - 1, 2):
        type_code, payload = value[i], value[i + 1]

        if not _is_int(type_code):
            continue

        if type_code == NODE_INFO:
            message = parse_node_info(payload)
        elif type_code == BLOCK_IMPORT:
            message = parse_block_import(payload)
        else:
            continue

        if message is None:
            result.malformed += 1
            logger.debug("Skipping malformed pair (type %s): %.200r", type_code, payload)
        else:
            result.messages.append(message)

    return result


def parse_line(line: str) -> ParseResult:
    """Decode a raw feed line and classify its pairs; non-JSON noise yields nothing."""
    try:
        value = json.loads(line)
    except (json.JSONDecodeError, TypeError, ValueError, RecursionError) as e:
        logger.debug("Invalid JSON received: %.100s (%s)", line, e)
        return ParseResult(well_formed=False)

    return parse_message(value)
