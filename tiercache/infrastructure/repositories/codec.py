"""
Entry codec shared by the remote repositories.

Entries are stored as a JSON envelope. Values must be JSON-serializable;
anything else is rejected before it reaches the store.
"""

import json
from typing import Union

from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheValidationException


def encode_entry(entry: CacheEntry) -> str:
    try:
        return json.dumps(entry.to_dict(), separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise CacheValidationException(
            f"Cache value is not JSON-serializable: {e}", field="value"
        )


def decode_entry(raw: Union[str, bytes]) -> CacheEntry:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return CacheEntry.from_dict(json.loads(raw))
