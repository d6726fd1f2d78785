"""Deterministic serialization helpers."""

import json
from typing import Any, Mapping, Optional


def canonical_json(value: Any) -> str:
    """Serialize data into stable JSON (sorted keys, compact separators)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def metadata_json(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Column value for a usage record's metadata; empty metadata is stored as NULL."""
    if not metadata:
        return None
    return canonical_json(dict(metadata))
