"""Utility helpers shared across the StreamFeed package."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Callable, Mapping

Clock = Callable[[], int]
"""Zero-argument callable returning the current time in epoch milliseconds."""


def system_clock() -> int:
    """Return the wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def canonical_json(params: Mapping[str, Any] | None) -> str:
    """Serialise ``params`` with sorted keys so equal mappings produce equal text."""

    return json.dumps(
        dict(params or {}),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def hash_params(params: Mapping[str, Any] | None) -> str:
    """Return a stable content hash of a parameter mapping."""

    payload = canonical_json(params).encode("utf-8")
    return hashlib.md5(payload, usedforsecurity=False).hexdigest()


def content_key(content_type: str, external_id: int | str) -> str:
    """Return the ``<type>-<externalId>`` identifier used across indexes."""

    return f"{content_type}-{external_id}"
