"""
Utility functions for the messaging service.
"""

import logging
import secrets
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Separator between the two identifiers of a conversation key
KEY_SEPARATOR = "_"

MIN_CELL_DIGITS = 10


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def is_cell_digits(value: str) -> bool:
    """
    Check that a value looks like cell digits: digits only, at least 10 of them.

    Args:
        value: Candidate identifier

    Returns:
        True if the value is a valid cell digits string
    """
    return value.isdigit() and value.isascii() and len(value) >= MIN_CELL_DIGITS


def generate_record_id(timestamp_ms: int | None = None) -> str:
    """
    Generate a store record id that sorts lexicographically by creation time.

    The id is a zero-padded hex millisecond prefix followed by random hex, so
    ids pushed within the same millisecond still never collide.

    Args:
        timestamp_ms: Creation time in epoch milliseconds (defaults to now)

    Returns:
        A 24 character record id
    """
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    record_id = f"{timestamp_ms:012x}{secrets.token_hex(6)}"
    logger.debug(f"Generated record id: {record_id}")
    return record_id
