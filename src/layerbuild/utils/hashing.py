"""
Content hashing helpers.

All digests are rendered as '<algorithm>:<hex>' strings so that a reference
always says how it was computed.
"""

import hashlib
import json
from typing import Any, BinaryIO

from .. import constants


def sha256_bytes(data: bytes) -> str:
    """Return 'sha256:<hex>' of a byte string."""
    return constants.HASH_PREFIX + hashlib.sha256(data).hexdigest()


def sha256_stream(stream: BinaryIO) -> str:
    """Hash a binary stream in chunks and return 'sha256:<hex>'."""
    h = hashlib.sha256()
    while True:
        chunk = stream.read(constants.READ_CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
    return constants.HASH_PREFIX + h.hexdigest()


def canonical_json(obj: Any) -> bytes:
    """
    Canonical JSON for hashing: UTF-8, sorted keys, no whitespace.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def digest_of(obj: Any) -> str:
    """Digest of the canonical JSON form of a JSON-compatible object."""
    return sha256_bytes(canonical_json(obj))


def split_digest(digest: str) -> tuple[str, str]:
    """Split 'sha256:<hex>' into ('sha256', '<hex>'), validating the shape."""
    algorithm, sep, hexpart = digest.partition(":")
    if not sep or algorithm != constants.HASH_ALGORITHM or not hexpart:
        raise ValueError(f"Not a '{constants.HASH_PREFIX}' digest: '{digest}'")
    try:
        int(hexpart, 16)
    except ValueError:
        raise ValueError(f"Digest '{digest}' is not hexadecimal")
    return algorithm, hexpart
