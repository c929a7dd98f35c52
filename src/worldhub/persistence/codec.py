"""Compression for opaque world state blobs and delta payloads."""

from __future__ import annotations

import json
import zlib
from typing import Any

COMPRESSION_LEVEL = 9


def compress_blob(raw: bytes) -> bytes:
    return zlib.compress(raw, COMPRESSION_LEVEL)


def decompress_blob(stored: bytes | None) -> bytes | None:
    if stored is None:
        return None
    return zlib.decompress(stored)


def compression_ratio(raw: bytes, stored: bytes) -> float:
    """Fraction of bytes saved, e.g. 0.75 means the stored form is a quarter of the raw size."""
    if not raw:
        return 0.0
    return 1 - len(stored) / len(raw)


def encode_payload(payload: Any) -> bytes:
    return compress_blob(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())


def decode_payload(stored: bytes) -> Any:
    return json.loads(zlib.decompress(stored))
