"""
Canonical JSON for report integrity hashes.

Objects are emitted with keys sorted, arrays keep order, datetimes are normalized to
ISO-8601 UTC. ``MISSING`` stands in for an absent value: it is dropped from objects
but kept as ``null`` inside arrays, so positional meaning is preserved.
"""
from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel


class _Missing:
    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _scalar(value: Any) -> str:
    if value is None or value is MISSING:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return _encode(value.value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        f = float(value)
        if not math.isfinite(f):
            return "null"
        if f.is_integer() and abs(f) < 1e16:
            return str(int(f))
        return json.dumps(f)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, datetime):
        return json.dumps(_iso_utc(value))
    if isinstance(value, date):
        return json.dumps(value.isoformat())
    raise TypeError(f"Value of type {type(value).__name__} is not canonical-JSON serializable")


def _encode(value: Any) -> str:
    if isinstance(value, BaseModel):
        return _encode(value.model_dump(mode="json"))
    if isinstance(value, dict):
        parts = []
        for key in sorted(value.keys(), key=str):
            item = value[key]
            if item is MISSING:
                continue
            parts.append(f"{json.dumps(str(key), ensure_ascii=False)}:{_encode(item)}")
        return "{" + ",".join(parts) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    return _scalar(value)


def canonical_stringify(value: Any) -> str:
    """Byte-stable JSON string for ``value`` (sorted keys, no whitespace)."""
    return _encode(value)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical form of ``value``."""
    return sha256_hex(canonical_stringify(value).encode("utf-8"))
