"""
Utility functions for the bulk import pipeline.

Includes id generation, null stripping and canonical JSON sizing helpers.
"""

import json
import uuid
from typing import Any


def generate_id() -> str:
    """Generate a UUID string for document identification."""
    return str(uuid.uuid4())


def strip_nulls(value: Any) -> Any:
    """Recursively drop None values from dicts (lists keep their positions)."""
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_nulls(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """Compact, null-stripped JSON used for both sizing and the wire."""
    return json.dumps(strip_nulls(value), separators=(",", ":"), ensure_ascii=False)


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))
