"""
PDF text sanitizers: dash/quote folding, control-char removal, strict bad-char check, formatters.
"""
from __future__ import annotations

import pytest

from reporting.sanitize import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    BadCharacterError,
    assert_no_bad_chars,
    exposure_color,
    format_delta,
    format_number,
    format_time_range,
    normalize_severity,
    normalize_text,
    pluralize,
    safe_text_for_pdf,
    sanitize_ascii,
    sanitize_text,
)

EM_DASH = chr(0x2014)
EN_DASH = chr(0x2013)
ZWSP = chr(0x200B)
LEFT_QUOTE = chr(0x201C)
RIGHT_QUOTE = chr(0x201D)
BULLET = chr(0x2022)
SOFT_HYPHEN = chr(0x00AD)


def test_sanitize_text_folds_dashes_and_tightens_hyphens():
    assert sanitize_text(f"Risk {EM_DASH} High") == "Risk-High"
    assert sanitize_text(f"2024{EN_DASH}2025") == "2024-2025"


def test_sanitize_text_quotes_bullets_and_zero_width():
    assert sanitize_text(f"{LEFT_QUOTE}safe{RIGHT_QUOTE}") == '"safe"'
    assert sanitize_text(f"{BULLET} item") == "- item"
    assert sanitize_text(f"ab{ZWSP}cd") == "abcd"


def test_sanitize_text_strips_controls_and_collapses_whitespace():
    assert sanitize_text("a\x00b\x1f  c \n\t d") == "ab c d"
    assert sanitize_text(None) == ""


def test_sanitize_ascii_drops_non_ascii():
    assert sanitize_ascii("Caf" + chr(0xE9) + " Bar") == "Caf Bar"


def test_normalize_text_maps_soft_hyphen_before_stripping_format_chars():
    assert normalize_text(f"co{SOFT_HYPHEN}op") == "co-op"


def test_normalize_text_nfkc():
    # fullwidth A
    assert normalize_text(chr(0xFF21) + "BC") == "ABC"


def test_assert_no_bad_chars_reports_code_points(monkeypatch):
    monkeypatch.setenv("PDF_STRICT", "1")
    with pytest.raises(BadCharacterError) as exc:
        assert_no_bad_chars("ok" + chr(0xFFFD), field="headline")
    assert exc.value.field == "headline"
    assert exc.value.code_points == ["U+FFFD"]


def test_assert_no_bad_chars_disabled(monkeypatch):
    monkeypatch.setenv("PDF_STRICT", "0")
    assert_no_bad_chars("x" + chr(0xFFFD))


def test_safe_text_for_pdf_output_passes_strict_check(monkeypatch):
    monkeypatch.setenv("PDF_STRICT", "1")
    dirty = f"Job{ZWSP} {EM_DASH} site\x07 {chr(0xE000)}"
    cleaned = safe_text_for_pdf(dirty)
    assert_no_bad_chars(cleaned)
    assert cleaned.startswith("Job-site")


@pytest.mark.parametrize(
    "raw,expected",
    [("CRITICAL", "critical"), ("major", "high"), ("Moderate", "medium"), ("minor", "low"), ("??", "info")],
)
def test_normalize_severity(raw, expected):
    assert normalize_severity(raw) == expected


def test_formatters():
    assert format_delta(None) == "N/A"
    assert format_delta(0) == "No change"
    assert format_delta(3) == "+3"
    assert format_delta(-2) == "-2"
    assert format_number(12345) == "12,345"
    assert format_number(2.5) == "2.5"
    assert pluralize(1, "job") == "job"
    assert pluralize(2, "job") == "jobs"
    assert format_time_range("30d") == "Last 30 days"
    assert format_time_range("all") == "All time"


def test_exposure_color():
    assert exposure_color("high") == RISK_HIGH
    assert exposure_color("moderate") == RISK_MEDIUM
    assert exposure_color("low") == RISK_LOW


def test_sanitize_text_folds_en_dash_between_words():
    assert sanitize_text(f"high{EN_DASH}risk") == "high-risk"


def test_sanitize_text_strips_c1_controls_and_del():
    assert sanitize_text("a\x80b\x85c\x9fd\x7fe") == "abcde"


def test_clean_ascii_passes_through_unchanged():
    clean = "Acme Construction: 42 jobs (30d), score 87/100."
    assert sanitize_text(clean) == clean
    assert sanitize_ascii(clean) == clean
