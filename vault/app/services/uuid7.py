"""
UUIDv7 identifiers for notes and audit rows.

The leading 48 bits are the Unix time in milliseconds, so IDs sort roughly by
creation time, which keeps the notes index and the audit table append-friendly.
"""

import os
import time
import uuid

_VERSION_BITS = 0x7 << 76
_VARIANT_BITS = 0x2 << 62


def generate_uuid7() -> str:
    """Return a new RFC 9562 UUIDv7 as a string."""
    timestamp_ms = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    rand = int.from_bytes(os.urandom(10), "big")

    rand_a = (rand >> 62) & 0xFFF
    rand_b = rand & ((1 << 62) - 1)

    value = (timestamp_ms << 80) | _VERSION_BITS | (rand_a << 64) | _VARIANT_BITS | rand_b
    return str(uuid.UUID(int=value))
