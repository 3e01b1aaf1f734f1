"""
Page budget and text fitting for the executive brief. A fixed-width measure keeps widths exact.
"""
from __future__ import annotations

import pytest

from reporting.layout import ELLIPSIS, PageBudget, fit_label, layout_chips, truncate_text, wrap_text


def mono(text: str, font_size: float) -> float:
    return len(text) * font_size * 0.5


def test_page_budget_breaks_until_cap():
    pages = []
    budget = PageBudget(page_height=100, top_margin=10, footer_reserve=10, safety_margin=0, max_pages=2,
                        on_new_page=pages.append)
    assert budget.content_bottom == 90
    assert budget.ensure_space(50)
    budget.advance(50)
    assert budget.ensure_space(50)  # breaks to page 2
    assert budget.page == 2 and budget.y == 10
    assert pages == [2]
    budget.advance(70)
    assert not budget.ensure_space(50)  # at the cap: caller skips
    assert budget.page == 2


def test_page_budget_rejects_block_taller_than_a_page():
    budget = PageBudget(page_height=100, top_margin=10, footer_reserve=10, safety_margin=0, max_pages=3)
    budget.advance(60)
    assert not budget.ensure_space(200)
    assert budget.page == 1


def test_page_budget_advance_clamps_to_bottom():
    budget = PageBudget(page_height=100, top_margin=10, footer_reserve=10, safety_margin=5)
    budget.advance(1000)
    assert budget.y == budget.content_bottom == 85
    assert budget.remaining == 0


def test_page_budget_requires_a_page():
    with pytest.raises(ValueError):
        PageBudget(page_height=100, top_margin=10, footer_reserve=10, max_pages=0)


def test_truncate_text_fits_width():
    out = truncate_text("Organization Name That Is Long", 50, 10, measure=mono)
    assert out.endswith(ELLIPSIS)
    assert mono(out, 10) <= 50
    assert truncate_text("short", 50, 10, measure=mono) == "short"
    assert truncate_text("anything", 5, 10, measure=mono) == ""


def test_fit_label_shrinks_before_truncating():
    shrunk = fit_label("abcdefghij", 45, font_size=10, min_font_size=8, measure=mono)
    assert not shrunk.truncated
    assert shrunk.font_size == 9.0
    floored = fit_label("abcdefghijklmnop", 45, font_size=10, min_font_size=8, measure=mono)
    assert floored.truncated
    assert floored.font_size == 8
    assert mono(floored.text, 8) <= 45


def test_wrap_text_respects_max_lines():
    lines = wrap_text("one two three four five six", 45, 10, measure=mono)
    assert lines == ["one two", "three", "four five", "six"]
    capped = wrap_text("one two three four five six", 45, 10, measure=mono, max_lines=2)
    assert len(capped) == 2
    assert capped[-1].endswith(ELLIPSIS)
    assert wrap_text("   ", 25, 10, measure=mono) == []


def test_layout_chips_all_fit():
    result = layout_chips(["a", "b", "c"], 200, font_size=10, padding_x=5, gap=5, measure=mono)
    assert result.overflow_count == 0
    assert result.more_label is None
    assert [c.label for c in result.lines[0]] == ["a", "b", "c"]


def test_layout_chips_overflow_collapses_into_more_chip():
    labels = [f"driver {i}" for i in range(12)]
    result = layout_chips(labels, 200, font_size=10, max_chips_per_line=4, max_lines=2, measure=mono)
    assert len(result.lines) <= 2
    assert all(len(line) <= 4 for line in result.lines)
    assert result.more_label == f"+{result.overflow_count} more"
    assert result.lines[-1][-1].label == result.more_label
    assert result.placed_count + result.overflow_count == len(labels)
    for line in result.lines:
        assert line[-1].x + line[-1].width <= 200


def test_wrap_text_zero_lines_is_empty():
    assert wrap_text("one two three", 45, 10, measure=mono, max_lines=0) == []
