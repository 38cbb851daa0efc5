"""
Encoding helpers for array-valued record fields.

A student's class memberships are stored as a JSON string in both the local
store and the server tables, and parsed back into a list on every read.
"""

import json
from typing import List, Union


def encode_classes(classes: Union[List[str], str, None]) -> str:
    """Serialize a class-name list. Already-encoded strings pass through."""
    if classes is None:
        return "[]"
    if isinstance(classes, str):
        return classes
    return json.dumps(list(classes), ensure_ascii=False)


def decode_classes(classes: Union[List[str], str, None]) -> List[str]:
    """Parse a stored class-name list, preserving order."""
    if classes is None or classes == "":
        return []
    if isinstance(classes, str):
        return list(json.loads(classes))
    return list(classes)
