"""
Canonical JSON: key order, MISSING handling, datetime normalization, stable hashes.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reporting.canonical import MISSING, canonical_hash, canonical_stringify, sha256_hex


def test_keys_sorted_and_no_whitespace():
    assert canonical_stringify({"b": 1, "a": [1, 2], "c": {"z": True, "y": None}}) == (
        '{"a":[1,2],"b":1,"c":{"y":null,"z":true}}'
    )


def test_key_order_does_not_change_hash():
    a = {"org": "acme", "metrics": {"high": 2, "low": 5}}
    b = {"metrics": {"low": 5, "high": 2}, "org": "acme"}
    assert canonical_hash(a) == canonical_hash(b)


def test_missing_dropped_from_objects_kept_as_null_in_arrays():
    assert canonical_stringify({"a": MISSING, "b": 1}) == '{"b":1}'
    assert canonical_stringify([1, MISSING, 3]) == "[1,null,3]"


def test_missing_is_falsy_singleton():
    assert not MISSING
    assert type(MISSING)() is MISSING


def test_naive_and_aware_datetimes_normalize_to_utc_millis():
    naive = datetime(2026, 1, 15, 12, 30, 45, 123456)
    aware = datetime(2026, 1, 15, 14, 30, 45, 123999, tzinfo=timezone(timedelta(hours=2)))
    assert canonical_stringify(naive) == '"2026-01-15T12:30:45.123Z"'
    assert canonical_stringify(aware) == '"2026-01-15T12:30:45.123Z"'


def test_integral_floats_match_ints():
    assert canonical_stringify({"n": 3.0}) == canonical_stringify({"n": 3})
    assert canonical_stringify(float("nan")) == "null"


def test_non_ascii_strings_kept_verbatim():
    text = "Caf" + chr(0xE9)
    assert canonical_stringify(text) == '"' + text + '"'


def test_unsupported_type_raises():
    with pytest.raises(TypeError):
        canonical_stringify({"x": object()})


def test_sha256_hex_known_value():
    assert sha256_hex(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.mark.parametrize(
    "changed",
    [
        {"org": "acme", "metrics": {"high": 3, "low": 5}, "jobs": ["j1", "j2"]},
        {"org": "acme", "metrics": {"high": 2, "low": 5}, "jobs": ["j1", "j3"]},
        {"org": "acme", "metrics": {"high": 2, "low": 5}, "jobs": ["j2", "j1"]},
        {"org": "acme", "metrics": {"high": 2, "low": "5"}, "jobs": ["j1", "j2"]},
    ],
)
def test_any_leaf_change_changes_hash(changed):
    base = {"org": "acme", "metrics": {"high": 2, "low": 5}, "jobs": ["j1", "j2"]}
    assert canonical_hash(changed) != canonical_hash(base)
