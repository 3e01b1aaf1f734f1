"""
Fixed-page-budget layout helpers for direct-drawn PDFs.

All vertical positions are measured from the top of the page (y grows downward);
the renderer converts to PDF coordinates when drawing. Nothing here raises on
overflow: content that does not fit is skipped or truncated so the page count
never exceeds the budget.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from reportlab.pdfbase.pdfmetrics import stringWidth

MeasureFn = Callable[[str, float], float]

ELLIPSIS = "..."
FONT_STEP = 0.5


def helvetica_measure(font_name: str = "Helvetica") -> MeasureFn:
    def _measure(text: str, font_size: float) -> float:
        return stringWidth(text, font_name, font_size)
    return _measure


DEFAULT_MEASURE: MeasureFn = helvetica_measure()


class PageBudget:
    """Vertical cursor with a hard page cap.

    content_bottom = page_height - footer_reserve - safety_margin. ensure_space()
    moves to a fresh page only while page < max_pages; past that it answers False
    and the caller skips the block.
    """

    def __init__(
        self,
        page_height: float,
        top_margin: float,
        footer_reserve: float,
        safety_margin: float = 8.0,
        max_pages: int = 2,
        on_new_page: Optional[Callable[[int], None]] = None,
    ):
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        self.page_height = page_height
        self.top_margin = top_margin
        self.footer_reserve = footer_reserve
        self.safety_margin = safety_margin
        self.max_pages = max_pages
        self.on_new_page = on_new_page
        self.page = 1
        self.y = top_margin
        self.page_has_body = False

    @property
    def content_bottom(self) -> float:
        return self.page_height - self.footer_reserve - self.safety_margin

    @property
    def content_height(self) -> float:
        return self.content_bottom - self.top_margin

    @property
    def remaining(self) -> float:
        return max(0.0, self.content_bottom - self.y)

    @property
    def pages_left(self) -> int:
        return self.max_pages - self.page

    def has_space(self, needed: float) -> bool:
        return self.y + needed <= self.content_bottom

    def can_break(self) -> bool:
        return self.page < self.max_pages

    def new_page(self) -> bool:
        """Start the next page if the budget allows. Returns False at the cap."""
        if not self.can_break():
            return False
        self.page += 1
        self.y = self.top_margin
        self.page_has_body = False
        if self.on_new_page is not None:
            self.on_new_page(self.page)
        return True

    def ensure_space(self, needed: float) -> bool:
        if self.has_space(needed):
            return True
        if needed > self.content_height:
            return False
        return self.new_page()

    def advance(self, dy: float) -> None:
        self.y = min(self.y + dy, self.content_bottom)

    def mark_body(self) -> None:
        self.page_has_body = True


def truncate_text(
    text: str,
    max_width: float,
    font_size: float,
    measure: MeasureFn = DEFAULT_MEASURE,
    suffix: str = ELLIPSIS,
) -> str:
    if measure(text, font_size) <= max_width:
        return text
    if measure(suffix, font_size) > max_width:
        return ""
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if measure(text[:mid].rstrip() + suffix, font_size) <= max_width:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo].rstrip() + suffix


@dataclass(frozen=True)
class FittedLabel:
    text: str
    font_size: float
    truncated: bool


def fit_label(
    text: str,
    max_width: float,
    *,
    font_size: float,
    min_font_size: float,
    measure: MeasureFn = DEFAULT_MEASURE,
) -> FittedLabel:
    """Shrink in 0.5pt steps down to min_font_size, then ellipsize at the floor."""
    size = font_size
    while measure(text, size) > max_width and size - FONT_STEP >= min_font_size:
        size -= FONT_STEP
    if measure(text, size) <= max_width:
        return FittedLabel(text=text, font_size=size, truncated=False)
    return FittedLabel(
        text=truncate_text(text, max_width, size, measure),
        font_size=size,
        truncated=True,
    )


def wrap_text(
    text: str,
    max_width: float,
    font_size: float,
    measure: MeasureFn = DEFAULT_MEASURE,
    max_lines: int | None = None,
) -> list[str]:
    words = text.split()
    if not words or (max_lines is not None and max_lines < 1):
        return []
    lines: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if measure(candidate, font_size) <= max_width:
            current = candidate
            continue
        if current:
            lines.append(current)
        current = word if measure(word, font_size) <= max_width else truncate_text(word, max_width, font_size, measure)
    if current:
        lines.append(current)
    if max_lines is not None and len(lines) > max_lines:
        kept = lines[:max_lines]
        tail = kept[-1]
        while tail and measure(tail + ELLIPSIS, font_size) > max_width:
            tail = tail[:-1]
        kept[-1] = tail.rstrip() + ELLIPSIS
        return kept
    return lines


@dataclass(frozen=True)
class Chip:
    label: str
    x: float
    width: float


@dataclass
class ChipLayout:
    lines: list[list[Chip]] = field(default_factory=list)
    overflow_count: int = 0
    more_label: Optional[str] = None

    @property
    def placed_count(self) -> int:
        return sum(1 for line in self.lines for chip in line if chip.label != self.more_label)


def _chip_width(label: str, font_size: float, padding_x: float, measure: MeasureFn) -> float:
    return measure(label, font_size) + padding_x * 2


def layout_chips(
    labels: list[str],
    max_width: float,
    *,
    font_size: float = 9.0,
    max_chips_per_line: int = 4,
    max_lines: int = 2,
    gap: float = 6.0,
    padding_x: float = 6.0,
    min_font_size: float = 7.0,
    measure: MeasureFn = DEFAULT_MEASURE,
) -> ChipLayout:
    """Flow chips left-to-right into at most max_lines lines of at most
    max_chips_per_line chips. Leftovers collapse into a trailing "+N more" chip,
    which always fits on the final line."""
    if max_chips_per_line < 1 or max_lines < 1:
        return ChipLayout(overflow_count=len(labels), more_label=f"+{len(labels)} more" if labels else None)

    inner = max_width - padding_x * 2
    fitted = [fit_label(label, inner, font_size=font_size, min_font_size=min_font_size, measure=measure).text for label in labels]

    lines: list[list[Chip]] = []
    line: list[Chip] = []
    cursor = 0.0
    index = 0
    while index < len(fitted):
        label = fitted[index]
        width = min(_chip_width(label, font_size, padding_x, measure), max_width)
        x = cursor + (gap if line else 0.0)
        if line and (len(line) >= max_chips_per_line or x + width > max_width):
            lines.append(line)
            line, cursor = [], 0.0
            if len(lines) >= max_lines:
                break
            continue
        line.append(Chip(label=label, x=x, width=width))
        cursor = x + width
        index += 1
    if line and len(lines) < max_lines:
        lines.append(line)

    overflow = len(fitted) - sum(len(l) for l in lines)
    if overflow <= 0:
        return ChipLayout(lines=lines)

    # Make room on the last line for the "+N more" chip
    last = lines[-1]
    while True:
        more_label = f"+{overflow} more"
        more_width = _chip_width(more_label, font_size, padding_x, measure)
        end = last[-1].x + last[-1].width if last else 0.0
        x = end + (gap if last else 0.0)
        if last and (len(last) >= max_chips_per_line or x + more_width > max_width):
            last.pop()
            overflow += 1
            continue
        last.append(Chip(label=more_label, x=x, width=min(more_width, max_width)))
        break
    lines = [l for l in lines if l]
    return ChipLayout(lines=lines, overflow_count=overflow, more_label=more_label)
