"""Integrity hashing for dataset snapshots."""

import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """Serialize ``data`` so that equal content always yields equal text."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def generate_checksum(data: Any) -> str:
    """
    Return a sha256 hex digest over a data blob.

    Strings are hashed as-is; any other value is hashed over its canonical
    JSON form, so key order and whitespace never change the result.
    """
    text = data if isinstance(data, str) else canonical_json(data)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
