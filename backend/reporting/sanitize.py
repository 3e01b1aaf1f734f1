"""
Text cleanup for PDF render surfaces.

sanitize_text: control chars out, dashes/quotes/bullets to ASCII, whitespace collapsed.
sanitize_ascii: sanitize_text plus printable-ASCII only (headlines, KPI labels).
normalize_text / safe_text_for_pdf: NFKC path with a strict bad-character check.
"""
from __future__ import annotations

import os
import re
import unicodedata

# C0 (minus \t \n \r), DEL and C1
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F\x80-\x9F]")
_ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\u2060\uFEFF]")
_DASH_RE = re.compile(
    r"[\uFFFD\uFFFE\uFFFF\u00AD\u2010-\u2015\u2212\uFE58\uFE63\uFF0D"
    r"\u058A\u05BE\u1400\u1806\u2E17\u2E1A\u2E3A\u2E3B\u301C\u3030\u30A0\uFE31\uFE32]"
)
_BULLET_RE = re.compile(r"[\u2022\u25CF\u25E6\u2043\u2219\u2023\u2024]")
_SINGLE_QUOTE_RE = re.compile(r"[\u2018\u2019\u201A\u201B\u2032]")
_DOUBLE_QUOTE_RE = re.compile(r"[\u201C\u201D\u201E\u201F\u2033]")
_NON_PRINTABLE_ASCII_RE = re.compile(r"[^\x20-\x7E]")
_WS_RE = re.compile(r"\s+")

_HYPHEN_BOTH_RE = re.compile(r"(\S)\s+-\s+(\S)")
_HYPHEN_LEFT_RE = re.compile(r"(\S)\s+-(\S)")
_HYPHEN_RIGHT_RE = re.compile(r"(\S)-\s+(\S)")

_SEVERITY_ALIASES = {
    "critical": "critical",
    "crit": "critical",
    "high": "high",
    "major": "high",
    "material": "high",
    "medium": "medium",
    "moderate": "medium",
    "med": "medium",
    "low": "low",
    "minor": "low",
    "info": "info",
    "informational": "info",
}

_TIME_RANGE_LABELS = {
    "7d": "Last 7 days",
    "30d": "Last 30 days",
    "90d": "Last 90 days",
    "all": "All time",
}

RISK_LOW = "#10B981"
RISK_MEDIUM = "#F59E0B"
RISK_HIGH = "#EF4444"


class BadCharacterError(ValueError):
    """Raised by assert_no_bad_chars when text would corrupt a PDF content stream."""

    def __init__(self, field: str, code_points: list[str]):
        self.field = field
        self.code_points = code_points
        super().__init__(f"Bad characters in {field}: {', '.join(code_points)}")


def _collapse(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _tighten_hyphens(text: str) -> str:
    text = _HYPHEN_BOTH_RE.sub(r"\1-\2", text)
    text = _HYPHEN_LEFT_RE.sub(r"\1-\2", text)
    return _HYPHEN_RIGHT_RE.sub(r"\1-\2", text)


def sanitize_text(text: object) -> str:
    if text is None:
        return ""
    s = str(text)
    if not s:
        return ""
    s = _CONTROL_RE.sub("", s)
    s = _ZERO_WIDTH_RE.sub("", s)
    s = _DASH_RE.sub("-", s)
    s = _SINGLE_QUOTE_RE.sub("'", s)
    s = _DOUBLE_QUOTE_RE.sub('"', s)
    s = _BULLET_RE.sub("-", s)
    s = _tighten_hyphens(s)
    return _collapse(s)


def sanitize_ascii(text: object) -> str:
    """sanitize_text, then drop anything outside printable ASCII."""
    s = sanitize_text(text)
    return _collapse(_NON_PRINTABLE_ASCII_RE.sub("", s))


def _is_noncharacter(cp: int) -> bool:
    return 0xFDD0 <= cp <= 0xFDEF or (cp & 0xFFFE) == 0xFFFE


def _is_bad_char(ch: str) -> bool:
    cp = ord(ch)
    if ch in "\n\r\t":
        return False
    if cp < 0x20 or 0x7F <= cp <= 0x9F:
        return True
    if 0x200B <= cp <= 0x200D or cp in (0x2060, 0xFEFF):
        return True
    if 0xFFFD <= cp <= 0xFFFF:
        return True
    if 0xE000 <= cp <= 0xF8FF or cp >= 0xF0000:
        return True
    return unicodedata.category(ch) in ("Cc", "Cf", "Co")


def normalize_text(text: object) -> str:
    if text is None:
        return ""
    s = unicodedata.normalize("NFKC", str(text))
    s = s.replace("\u2028", " ").replace("\u2029", " ")
    # Map dashes before category stripping: U+00AD is Cf but reads as a hyphen
    s = _DASH_RE.sub("-", s)
    s = "".join(
        ch for ch in s
        if ch in "\n\r\t"
        or (unicodedata.category(ch) not in ("Cc", "Cf", "Co") and not _is_noncharacter(ord(ch)))
    )
    return sanitize_text(s)


def pdf_strict_enabled() -> bool:
    return os.environ.get("PDF_STRICT", "1").strip() != "0"


def assert_no_bad_chars(text: str, field: str = "text") -> None:
    if not pdf_strict_enabled() or not text:
        return
    bad = sorted({f"U+{ord(ch):04X}" for ch in text if _is_bad_char(ch)})
    if bad:
        raise BadCharacterError(field, bad)


def safe_text_for_pdf(text: object, field: str = "text") -> str:
    cleaned = normalize_text(text)
    assert_no_bad_chars(cleaned, field)
    return cleaned


def normalize_severity(value: object) -> str:
    key = sanitize_ascii(value).lower()
    return _SEVERITY_ALIASES.get(key, "info")


def format_delta(delta: int | float | None) -> str:
    if delta is None:
        return "N/A"
    if delta == 0:
        return "No change"
    n = int(round(delta))
    return f"+{n}" if n > 0 else str(n)


def format_number(value: int | float | str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.1f}"
    return f"{int(value):,}"


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    if count == 1:
        return singular
    return plural or f"{singular}s"


def format_time_range(time_range: str) -> str:
    return sanitize_text(_TIME_RANGE_LABELS.get(time_range, time_range))


def exposure_color(level: str) -> str:
    if level == "high":
        return RISK_HIGH
    if level == "moderate":
        return RISK_MEDIUM
    return RISK_LOW
