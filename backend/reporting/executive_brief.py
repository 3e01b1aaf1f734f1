"""
Two-page executive brief, drawn directly on a reportlab canvas.

Page 1: header band, KPI strip, posture gauge, executive summary, metrics table,
data coverage, top risk drivers. Page 2: two columns (actions, methodology,
freshness on the left; integrity capsule with a verify QR code on the right).
Every block goes through PageBudget so the document never exceeds two pages.
"""
from __future__ import annotations

import io
import math
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.pdfgen import canvas as rl_canvas

from posture import RiskPosture
from reporting.canonical import canonical_hash, sha256_hex
from reporting.layout import PageBudget, fit_label, layout_chips, truncate_text, wrap_text
from reporting.sanitize import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    exposure_color,
    format_delta,
    format_number,
    format_time_range,
    pluralize,
    sanitize_ascii,
)

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_MONO = "Courier"

SIZE_H1 = 32
SIZE_H2 = 22
SIZE_H3 = 16
SIZE_BODY = 11
SIZE_CAPTION = 9
SIZE_KPI_VALUE = 24
SIZE_KPI_LABEL = 9

MARGIN = 48
BOTTOM_RESERVE = 60
SECTION_GAP = 32
CARD_PADDING = 16
ROW_HEIGHT = 26
CELL_PADDING = 12
KPI_HEIGHT = 95
KPI_GAP = 5
GAUGE_WIDTH = 280
GAUGE_HEIGHT = 40
COLUMN_GUTTER = 24
LEFT_COLUMN_RATIO = 0.68
MAX_PAGES = 2
MAX_DRIVERS = 5

ACCENT = colors.HexColor("#2563EB")
ACCENT_LIGHT = colors.HexColor("#3B82F6")
PRIMARY_TEXT = colors.HexColor("#1A1A1A")
SECONDARY_TEXT = colors.HexColor("#666666")
BORDER_GRAY = colors.HexColor("#E5E5E5")
LIGHT_GRAY_BG = colors.HexColor("#F5F5F5")
CARD_BG = colors.HexColor("#FAFAFA")
TABLE_HEADER_BG = colors.HexColor("#F8F9FA")

DEFAULT_BASE_URL = os.environ.get("RISKMATE_PUBLIC_URL", "https://riskmate.app")

GETTING_STARTED_ACTIONS = (
    ("Require risk assessment on job creation",
     "Enable automatic risk scoring and mitigation checklists for every job"),
    ("Enable attestations on job closeout",
     "Ensure all jobs are reviewed and signed off before completion"),
    ("Upload evidence for high-risk jobs",
     "Document safety measures and compliance for audit trails"),
    ("Review and sign off on pending attestations",
     "Complete governance requirements for job compliance"),
    ("Monitor risk posture trends over time",
     "Track improvements in overall risk exposure and compliance"),
)

METHODOLOGY = (
    "High-risk jobs have a risk score above 75; open incidents include flagged high-risk jobs",
    "Deltas compare the selected window with the preceding window of equal length",
    "Ledger integrity is checked by recomputing the audit hash chain for the organization",
)

CONFIDENTIAL = (
    "CONFIDENTIAL - This document contains sensitive information and is intended only "
    "for authorized recipients."
)


@dataclass(frozen=True)
class BriefResult:
    pdf_bytes: bytes
    pdf_hash: str
    metadata_hash: str
    page_count: int
    window_start: datetime
    window_end: datetime


def short_report_id(report_id: str) -> str:
    return report_id.replace("-", "")[:8]


def verify_url(report_id: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or DEFAULT_BASE_URL).rstrip('/')}/api/verify/RM-{short_report_id(report_id)}"


def brief_metrics(data: RiskPosture) -> dict[str, Any]:
    return {
        "exposure_level": data.exposure_level,
        "posture_score": data.posture_score,
        "high_risk_jobs": data.high_risk_jobs,
        "open_incidents": data.open_incidents,
        "recent_violations": data.recent_violations,
        "flagged_jobs": data.flagged_jobs,
        "pending_signoffs": data.pending_signoffs,
        "signed_signoffs": data.signed_signoffs,
        "proof_packs_generated": data.proof_packs_generated,
        "ledger_integrity": data.ledger_integrity,
    }


def metadata_hash(data: RiskPosture, organization_name: str, time_range: str, report_id: str) -> str:
    return canonical_hash({
        "report_id": report_id,
        "organization": organization_name,
        "time_range": time_range,
        "window_start": data.window_start,
        "window_end": data.window_end,
        "metrics": brief_metrics(data),
    })


def _fmt_date(value: Optional[datetime]) -> str:
    if value is None:
        return "N/A"
    return f"{value:%b} {value.day}, {value.year}"


def _score_color(score: Optional[int]):
    if score is None:
        return SECONDARY_TEXT
    if score >= 75:
        return colors.HexColor(RISK_LOW)
    if score >= 50:
        return colors.HexColor(RISK_MEDIUM)
    return colors.HexColor(RISK_HIGH)


class _BriefCanvas(rl_canvas.Canvas):
    """Defers footers until save() so each page can say 'Page x of y'."""

    def __init__(self, *args, footer_text: tuple[str, str, str] = ("", "", ""), **kwargs):
        super().__init__(*args, **kwargs)
        self._footer_text = footer_text
        self._saved_pages: list[dict] = []

    def showPage(self):
        self._saved_pages.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_pages)
        for index, state in enumerate(self._saved_pages, start=1):
            self.__dict__.update(state)
            self._draw_footer(index, total)
            super().showPage()
        super().save()

    def _draw_footer(self, page: int, total: int) -> None:
        width, _ = self._pagesize
        line1, line2, line3 = self._footer_text
        self.saveState()
        self.setStrokeColor(BORDER_GRAY)
        self.setLineWidth(0.5)
        self.line(MARGIN, 50, width - MARGIN, 50)
        self.setFillColor(SECONDARY_TEXT)
        self.setFont(FONT, 7.5)
        text = truncate_text(f"{line1} | Page {page} of {total}", width - MARGIN * 2, 7.5)
        self.drawString(MARGIN, 38, text)
        self.setFont(FONT, 6.5)
        self.drawString(MARGIN, 28, line2)
        self.drawString(MARGIN, 18, truncate_text(line3, width - MARGIN * 2, 6.5))
        self.restoreState()


class _BriefRenderer:
    def __init__(
        self,
        c: _BriefCanvas,
        data: RiskPosture,
        organization_name: str,
        time_range: str,
        report_id: str,
        generated_at: datetime,
        meta_hash: str,
        base_url: Optional[str],
    ):
        self.c = c
        self.data = data
        self.org = sanitize_ascii(organization_name) or "Organization"
        self.time_range = time_range
        self.range_label = format_time_range(time_range)
        self.report_id = report_id
        self.generated_at = generated_at
        self.meta_hash = meta_hash
        self.base_url = base_url
        self.width, self.height = LETTER
        self.content_width = self.width - MARGIN * 2
        self.budget = PageBudget(
            page_height=self.height,
            top_margin=MARGIN,
            footer_reserve=BOTTOM_RESERVE,
            max_pages=MAX_PAGES,
            on_new_page=lambda _page: self.c.showPage(),
        )
        self.metrics_on_page1 = False

    # drawing primitives take top-down y

    def _y(self, top: float) -> float:
        return self.height - top

    def _text(self, x, top, text, font=FONT, size=SIZE_BODY, color=PRIMARY_TEXT, align="left"):
        c = self.c
        c.setFont(font, size)
        c.setFillColor(color)
        text = sanitize_ascii(text)
        if align == "right":
            c.drawRightString(x, self._y(top), text)
        elif align == "center":
            c.drawCentredString(x, self._y(top), text)
        else:
            c.drawString(x, self._y(top), text)

    def _rect(self, x, top, w, h, fill, stroke=None, radius=0.0):
        c = self.c
        c.setFillColor(fill)
        if stroke is not None:
            c.setStrokeColor(stroke)
            c.setLineWidth(0.75)
        if radius:
            c.roundRect(x, self._y(top + h), w, h, radius, fill=1, stroke=1 if stroke is not None else 0)
        else:
            c.rect(x, self._y(top + h), w, h, fill=1, stroke=1 if stroke is not None else 0)

    def _heading(self, x: float, text: str, size: float = SIZE_H3) -> None:
        b = self.budget
        self._text(x, b.y + size, text, FONT_BOLD, size)
        b.advance(size + 10)
        b.mark_body()

    # page 1

    def header(self) -> None:
        band = self.height * 0.14
        self._rect(0, 0, self.width, band, PRIMARY_TEXT)
        self._rect(0, band, self.width, 3, ACCENT)
        self._text(MARGIN, 50 + SIZE_H1 * 0.8, "Executive Brief", FONT_BOLD, SIZE_H1, colors.white)
        sub = truncate_text(f"{self.org} | {self.range_label}", self.content_width, SIZE_BODY)
        self._text(MARGIN, band - 14, sub, FONT, SIZE_BODY, colors.HexColor("#D1D5DB"))
        self._text(
            self.width - MARGIN, band - 14,
            f"Exposure: {self.data.exposure_level.upper()}",
            FONT_BOLD, SIZE_BODY, colors.HexColor(exposure_color(self.data.exposure_level)), "right",
        )
        self.budget.y = band + 3 + 20

    def kpi_cards(self) -> None:
        d = self.data
        deltas = d.deltas
        cards = [
            ("Posture Score", "--" if d.posture_score is None else str(d.posture_score), None, _score_color(d.posture_score), False),
            ("High Risk Jobs", format_number(d.high_risk_jobs), deltas.high_risk_jobs if deltas else None, PRIMARY_TEXT, False),
            ("Open Incidents", format_number(d.open_incidents), deltas.open_incidents if deltas else None, PRIMARY_TEXT, False),
            ("Signed Attestations", format_number(d.signed_signoffs), deltas.signed_signoffs if deltas else None, PRIMARY_TEXT, True),
            ("Proof Packs", format_number(d.proof_packs_generated), deltas.proof_packs if deltas else None, PRIMARY_TEXT, True),
        ]
        b = self.budget
        if not b.ensure_space(KPI_HEIGHT):
            return
        card_w = (self.width - MARGIN * 2 - 20) / 5
        top = b.y
        for i, (label, value, delta, value_color, higher_is_better) in enumerate(cards):
            x = MARGIN + i * (card_w + KPI_GAP)
            self._rect(x, top, card_w, KPI_HEIGHT, CARD_BG, BORDER_GRAY, radius=4)
            value_top = top + CARD_PADDING + 8
            self._text(x + CARD_PADDING, value_top + SIZE_KPI_VALUE * 0.8, value, FONT_BOLD, SIZE_KPI_VALUE, value_color)
            fitted = fit_label(label, card_w - CARD_PADDING * 2, font_size=SIZE_KPI_LABEL, min_font_size=7)
            self._text(x + CARD_PADDING, value_top + SIZE_KPI_VALUE + 12, fitted.text, FONT, fitted.font_size, SECONDARY_TEXT)
            if delta:
                worse = delta < 0 if higher_is_better else delta > 0
                chip_color = colors.HexColor(RISK_HIGH) if worse else colors.HexColor(RISK_LOW)
                chip_text = format_delta(delta)
                chip_w = self.c.stringWidth(chip_text, FONT_BOLD, 8) + 10
                chip_top = top + KPI_HEIGHT - CARD_PADDING - 12
                self._rect(x + CARD_PADDING, chip_top, chip_w, 12, chip_color, radius=3)
                self._text(x + CARD_PADDING + 5, chip_top + 9, chip_text, FONT_BOLD, 8, colors.white)
        b.advance(KPI_HEIGHT + 20)
        b.mark_body()

    def gauge(self) -> None:
        d = self.data
        if not d.has_sufficient_data or d.posture_score is None:
            return
        b = self.budget
        needed = GAUGE_HEIGHT + 30
        if not b.has_space(needed):
            return
        risk = 100 - d.posture_score
        top = b.y
        segments = ((0, 33, RISK_LOW, "Low"), (33, 66, RISK_MEDIUM, "Moderate"), (66, 100, RISK_HIGH, "High"))
        bar_h = GAUGE_HEIGHT / 2
        for lo, hi, color, label in segments:
            x = MARGIN + GAUGE_WIDTH * lo / 100
            w = GAUGE_WIDTH * (hi - lo) / 100
            self._rect(x, top, w, bar_h, LIGHT_GRAY_BG, BORDER_GRAY)
            filled = max(0, min(risk, hi) - lo)
            if filled:
                self._rect(x, top, GAUGE_WIDTH * filled / 100, bar_h, colors.HexColor(color))
            self._text(x + w / 2, top + bar_h + 14, label, FONT, SIZE_CAPTION, SECONDARY_TEXT, "center")
        self._text(
            MARGIN + GAUGE_WIDTH + 16, top + bar_h - 4,
            f"Posture score {d.posture_score}/100", FONT_BOLD, SIZE_BODY, _score_color(d.posture_score),
        )
        b.advance(needed)
        b.mark_body()

    def _insights(self) -> list[str]:
        d = self.data
        if not d.has_sufficient_data:
            return [
                "Insufficient job volume in selected window to compute posture score",
                "Metrics will populate automatically as job data is recorded",
                "Requires at least 1 job with risk assessment in the selected time range",
            ]
        lines = []
        if d.high_risk_jobs:
            lines.append(f"{d.high_risk_jobs} high-risk {pluralize(d.high_risk_jobs, 'job')} requiring attention")
        if d.open_incidents:
            lines.append(f"{d.open_incidents} open {pluralize(d.open_incidents, 'incident')} under investigation")
        if d.pending_signoffs:
            lines.append(
                f"{d.pending_signoffs} pending {pluralize(d.pending_signoffs, 'attestation')} awaiting signatures"
            )
        if d.ledger_integrity == "verified":
            lines.append("Ledger integrity verified - all audit trails intact")
        elif d.ledger_integrity == "error":
            lines.append("Ledger integrity check failed - investigation required")
        return lines

    def executive_summary(self) -> None:
        b = self.budget
        statement = wrap_text(sanitize_ascii(self.data.confidence_statement), self.content_width, SIZE_BODY, max_lines=2)
        insights = self._insights()
        needed = SIZE_H2 + 10 + (len(statement) + len(insights)) * 16
        if not b.ensure_space(needed):
            return
        self._heading(MARGIN, "Executive Summary", SIZE_H2)
        for line in statement:
            self._text(MARGIN, b.y + SIZE_BODY, line, FONT_BOLD, SIZE_BODY)
            b.advance(16)
        for line in insights:
            line = truncate_text(f"- {line}", self.content_width, SIZE_BODY)
            self._text(MARGIN, b.y + SIZE_BODY, line, FONT, SIZE_BODY, SECONDARY_TEXT)
            b.advance(16)
        b.advance(SECTION_GAP / 2)

    def _metric_rows(self) -> list[tuple[str, str, str]]:
        d = self.data
        deltas = d.deltas

        def delta(name: str) -> str:
            return format_delta(getattr(deltas, name) if deltas else None)

        return [
            ("High Risk Jobs", format_number(d.high_risk_jobs), delta("high_risk_jobs")),
            ("Open Incidents", format_number(d.open_incidents), delta("open_incidents")),
            ("Recent Violations", format_number(d.recent_violations), delta("violations")),
            ("Flagged for Review", format_number(d.flagged_jobs), delta("flagged_jobs")),
            ("Pending Sign-offs", format_number(d.pending_signoffs), "-"),
            ("Signed Sign-offs", format_number(d.signed_signoffs), "-"),
            ("Proof Packs Generated", format_number(d.proof_packs_generated), "-"),
        ]

    def metrics_table_height(self) -> float:
        return SIZE_H3 + 10 + ROW_HEIGHT + 4 + len(self._metric_rows()) * ROW_HEIGHT + SECTION_GAP / 2

    def metrics_table(self, x: float, width: float) -> None:
        b = self.budget
        self._heading(x, "Key Metrics")
        col_widths = (280, 120, 80)
        scale = min(1.0, width / sum(col_widths))
        cols = [w * scale for w in col_widths]
        header_h = ROW_HEIGHT + 4
        top = b.y
        self._rect(x, top, sum(cols), header_h, TABLE_HEADER_BG, BORDER_GRAY)
        cx = x
        for title, w in zip(("Metric", "Value", "Change"), cols):
            self._text(cx + CELL_PADDING, top + header_h / 2 + 4, title, FONT_BOLD, SIZE_CAPTION, SECONDARY_TEXT)
            cx += w
        top += header_h
        for i, row in enumerate(self._metric_rows()):
            self._rect(x, top, sum(cols), ROW_HEIGHT, CARD_BG if i % 2 else colors.white)
            cx = x
            for cell, w in zip(row, cols):
                cell = truncate_text(cell, w - CELL_PADDING * 2, SIZE_BODY)
                self._text(cx + CELL_PADDING, top + ROW_HEIGHT / 2 + 4, cell, FONT, SIZE_BODY)
                cx += w
            top += ROW_HEIGHT
        self.c.setStrokeColor(BORDER_GRAY)
        self.c.line(x, self._y(top), x + sum(cols), self._y(top))
        b.advance(top - b.y + SECTION_GAP / 2)

    def data_coverage(self) -> None:
        d = self.data
        b = self.budget
        rows = [
            ("Jobs in window", format_number(d.total_jobs)),
            ("Last job", _fmt_date(d.last_job_at)),
            ("Incidents in window", format_number(d.open_incidents)),
            ("Attestations coverage", f"{d.signed_signoffs} of {d.signed_signoffs + d.pending_signoffs} signed"),
        ]
        reason = None if d.has_sufficient_data else "Reason: No jobs with risk assessments in selected window"
        needed = SIZE_H3 + 10 + len(rows) * 16 + (16 if reason else 0) + SECTION_GAP / 2
        if not b.has_space(needed):
            return
        self._heading(MARGIN, "Data Coverage")
        for label, value in rows:
            self._text(MARGIN, b.y + SIZE_BODY, label, FONT, SIZE_BODY, SECONDARY_TEXT)
            self._text(MARGIN + 200, b.y + SIZE_BODY, value, FONT_BOLD, SIZE_BODY)
            b.advance(16)
        if reason:
            self._text(MARGIN, b.y + SIZE_CAPTION, reason, FONT, SIZE_CAPTION, SECONDARY_TEXT)
            b.advance(16)
        b.advance(SECTION_GAP / 2)

    def driver_labels(self) -> list[str]:
        drivers = self.data.drivers
        picked = drivers.high_risk_jobs[:3] + drivers.open_incidents[:2] + drivers.violations[:2]
        return [sanitize_ascii(f"{d.label} ({d.count})") for d in picked[:MAX_DRIVERS]]

    def top_drivers(self) -> None:
        b = self.budget
        labels = self.driver_labels()
        chip_h = 18
        chips = layout_chips(labels, self.content_width, font_size=SIZE_CAPTION, max_chips_per_line=3, max_lines=2)
        body_h = len(chips.lines) * (chip_h + 6) if labels else 16
        if not b.has_space(SIZE_H3 + 10 + body_h):
            return
        self._heading(MARGIN, "Top Risk Drivers")
        if not labels:
            self._text(MARGIN, b.y + SIZE_BODY, "No material risk drivers in this window", FONT, SIZE_BODY, SECONDARY_TEXT)
            b.advance(16)
            return
        for line in chips.lines:
            for chip in line:
                self._rect(MARGIN + chip.x, b.y, chip.width, chip_h, LIGHT_GRAY_BG, BORDER_GRAY, radius=4)
                self._text(MARGIN + chip.x + 6, b.y + chip_h / 2 + 3, chip.label, FONT, SIZE_CAPTION)
            b.advance(chip_h + 6)

    # page 2

    def _actions(self) -> list[tuple[int, str, str]]:
        d = self.data
        if d.has_sufficient_data and d.recommended_actions:
            return [(a.priority, a.action, a.reason) for a in d.recommended_actions]
        return [(i, action, reason) for i, (action, reason) in enumerate(GETTING_STARTED_ACTIONS, start=1)]

    def recommended_actions(self, x: float, width: float) -> None:
        b = self.budget
        if not b.has_space(100):
            return
        self._heading(x, "Recommended Actions")
        for priority, action, reason in self._actions()[:3]:
            if not b.has_space(34):
                break
            self._text(x, b.y + SIZE_BODY, truncate_text(f"{priority}. {action}", width, SIZE_BODY), FONT_BOLD, SIZE_BODY)
            b.advance(15)
            self._text(x + 14, b.y + SIZE_CAPTION, truncate_text(reason, width - 14, SIZE_CAPTION), FONT, SIZE_CAPTION, SECONDARY_TEXT)
            b.advance(19)
        b.advance(SECTION_GAP / 2)

    def methodology(self, x: float, width: float) -> None:
        b = self.budget
        if not b.has_space(70):
            return
        self._heading(x, "Methodology")
        for bullet in METHODOLOGY:
            for line in wrap_text(f"- {bullet}", width, SIZE_CAPTION, max_lines=2):
                if not b.has_space(13):
                    return
                self._text(x, b.y + SIZE_CAPTION, line, FONT, SIZE_CAPTION, SECONDARY_TEXT)
                b.advance(13)
        b.advance(SECTION_GAP / 2)

    def data_freshness(self, x: float, width: float) -> None:
        d = self.data
        b = self.budget
        if not b.has_space(40):
            return
        self._heading(x, "Data Freshness")
        lines = [
            f"Window: {_fmt_date(d.window_start)} - {_fmt_date(d.window_end)} (UTC)",
            f"Last material event: {_fmt_date(d.last_material_event_at)}",
        ]
        for line in lines:
            if not b.has_space(13):
                return
            self._text(x, b.y + SIZE_CAPTION, truncate_text(line, width, SIZE_CAPTION), FONT, SIZE_CAPTION, SECONDARY_TEXT)
            b.advance(13)

    def integrity_capsule(self, x: float, top: float, width: float) -> None:
        d = self.data
        qr_size = min(width - CARD_PADDING * 2, 110)
        height = 250
        self._rect(x, top, width, height, CARD_BG, BORDER_GRAY, radius=6)
        inner_x = x + CARD_PADDING
        inner_w = width - CARD_PADDING * 2
        y = top + CARD_PADDING
        self._text(inner_x, y + SIZE_BODY, "Report Integrity", FONT_BOLD, SIZE_BODY)
        y += 20
        status = {"verified": "Verified", "error": "Failed"}.get(d.ledger_integrity, "Not verified")
        status_color = {"verified": RISK_LOW, "error": RISK_HIGH}.get(d.ledger_integrity, RISK_MEDIUM)
        self._text(inner_x, y + SIZE_CAPTION, f"Ledger: {status}", FONT_BOLD, SIZE_CAPTION, colors.HexColor(status_color))
        y += 14
        self._text(inner_x, y + SIZE_CAPTION, f"Report ID: RM-{short_report_id(self.report_id)}", FONT, SIZE_CAPTION, SECONDARY_TEXT)
        y += 14

        url = verify_url(self.report_id, self.base_url)
        widget = QrCodeWidget(url)
        bx0, by0, bx1, by1 = widget.getBounds()
        bw, bh = bx1 - bx0, by1 - by0
        drawing = Drawing(qr_size, qr_size, transform=[qr_size / bw, 0, 0, qr_size / bh, 0, 0])
        drawing.add(widget)
        renderPDF.draw(drawing, self.c, inner_x, self._y(y + qr_size))
        y += qr_size + 6
        self._text(inner_x, y + 7, truncate_text("Scan to verify", inner_w, 7), FONT, 7, SECONDARY_TEXT)
        y += 14

        self._text(inner_x, y + 7, "Metadata hash", FONT_BOLD, 7, SECONDARY_TEXT)
        y += 10
        per_line = max(8, int(inner_w // self.c.stringWidth("0", FONT_MONO, 6.5)))
        chunks = [self.meta_hash[i:i + per_line] for i in range(0, len(self.meta_hash), per_line)]
        for chunk in chunks[:4]:
            self._text(inner_x, y + 6.5, chunk, FONT_MONO, 6.5, PRIMARY_TEXT)
            y += 9

    def page_two(self) -> None:
        b = self.budget
        if not b.new_page():
            return
        left_w = math.floor((self.width - MARGIN * 2 - COLUMN_GUTTER) * LEFT_COLUMN_RATIO)
        right_x = MARGIN + left_w + COLUMN_GUTTER
        right_w = self.width - MARGIN - right_x

        if not self.metrics_on_page1 and b.has_space(200):
            self.metrics_table(MARGIN, left_w)
        self.recommended_actions(MARGIN, left_w)
        self.methodology(MARGIN, left_w)
        self.data_freshness(MARGIN, left_w)
        self.integrity_capsule(right_x, MARGIN, right_w)

    def render(self) -> None:
        self.header()
        self.kpi_cards()
        self.gauge()
        self.executive_summary()
        if self.budget.has_space(self.metrics_table_height()):
            self.metrics_table(MARGIN, self.content_width)
            self.metrics_on_page1 = True
        self.data_coverage()
        self.top_drivers()
        self.page_two()
        self.c.showPage()


def build_executive_brief_pdf(
    data: RiskPosture,
    organization_name: str,
    time_range: str,
    report_id: str,
    generated_at: Optional[datetime] = None,
    build_sha: Optional[str] = None,
    base_url: Optional[str] = None,
) -> BriefResult:
    """Render the brief. Output is byte-stable for identical inputs."""
    generated_at = generated_at or datetime.utcnow()
    meta_hash = metadata_hash(data, organization_name, time_range, report_id)
    short_id = short_report_id(report_id)
    org = sanitize_ascii(organization_name) or "Organization"
    build = (build_sha or "")[:8] or "local"
    footer = (
        f"RiskMate Executive Brief | {org} | {format_time_range(time_range)} | "
        f"Generated {_fmt_date(generated_at)} | Report ID: {short_id}",
        f"build: {build} | mode: premium | reportId: {short_id}",
        CONFIDENTIAL,
    )

    buf = io.BytesIO()
    c = _BriefCanvas(buf, pagesize=LETTER, invariant=1, footer_text=footer)
    c.setTitle(f"RiskMate Executive Brief - {org}")
    c.setAuthor("RiskMate")
    renderer = _BriefRenderer(c, data, organization_name, time_range, report_id, generated_at, meta_hash, base_url)
    renderer.render()
    page_count = len(c._saved_pages)
    c.save()

    pdf_bytes = buf.getvalue()
    return BriefResult(
        pdf_bytes=pdf_bytes,
        pdf_hash=sha256_hex(pdf_bytes),
        metadata_hash=meta_hash,
        page_count=page_count,
        window_start=data.window_start,
        window_end=data.window_end,
    )
