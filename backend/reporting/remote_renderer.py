"""
Remote PDF rendering through a hosted headless browser (Browserless) over CDP.

Set BROWSERLESS_TOKEN; BROWSERLESS_URL defaults to the production SFO endpoint.
The remote browser has no user session, so the target page must be reachable
with a signed print token in its URL.
"""
from __future__ import annotations

import logging
import math
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import urlencode

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

_LOG = logging.getLogger("uvicorn.error")

DEFAULT_BROWSERLESS_URL = "wss://production-sfo.browserless.io"
LEGACY_BROWSERLESS_HOST = "chrome.browserless.io"
SESSION_TIMEOUT_MS = 300_000
CONNECT_TIMEOUT_MS = 30_000
NAVIGATION_TIMEOUT_MS = 45_000
READY_TIMEOUT_MS = 30_000
FONT_SETTLE_MS = 500
VIEWPORT = {"width": 794, "height": 1123}
READY_SELECTORS = ('[data-report-ready="true"]', "#pdf-ready", ".cover-page")
AUTH_PATH_MARKERS = ("/login", "/auth", "/signin")

MAX_CONNECT_RETRIES = 5
BACKOFF_BASE_MS = 500
BACKOFF_JITTER_MS = 250

T = TypeVar("T")


class RenderError(Exception):
    """Remote render failure with the pipeline stage it happened in."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        code: str = "PDF_GENERATION_ERROR",
        retryable: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.retryable = retryable
        self.details = details or {}


@dataclass(frozen=True)
class RendererConfig:
    base_url: str
    token: str

    @property
    def cdp_url(self) -> str:
        query = urlencode({"token": self.token, "timeout": SESSION_TIMEOUT_MS})
        return f"{self.base_url}?{query}"


def get_renderer_config() -> RendererConfig:
    token = (os.environ.get("BROWSERLESS_TOKEN") or "").strip()
    if not token:
        raise RenderError(
            "BROWSERLESS_TOKEN is not set",
            stage="connect_browserless",
            code="RENDERER_NOT_CONFIGURED",
        )
    base_url = (os.environ.get("BROWSERLESS_URL") or "").strip() or DEFAULT_BROWSERLESS_URL
    if LEGACY_BROWSERLESS_HOST in base_url:
        raise RenderError(
            f"BROWSERLESS_URL points at the retired host {LEGACY_BROWSERLESS_HOST}; use {DEFAULT_BROWSERLESS_URL}",
            stage="connect_browserless",
            code="RENDERER_NOT_CONFIGURED",
        )
    return RendererConfig(base_url=base_url.rstrip("/"), token=token)


def is_rate_limited(exc: BaseException) -> bool:
    msg = str(exc)
    return "429" in msg or "Too Many Requests" in msg or "rate limit" in msg.lower()


def connect_with_backoff(
    connect: Callable[[], T],
    *,
    max_retries: int = MAX_CONNECT_RETRIES,
    base_delay_ms: int = BACKOFF_BASE_MS,
    jitter_ms: int = BACKOFF_JITTER_MS,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """Call connect(); on 429-style failures wait base*2^n + jitter and retry.

    Non-429 errors and the final failed attempt propagate unchanged.
    """
    delay_ms = base_delay_ms
    for attempt in range(1, max_retries + 1):
        try:
            return connect()
        except Exception as e:
            if not is_rate_limited(e) or attempt == max_retries:
                raise
            wait_ms = delay_ms + math.floor(rand() * jitter_ms)
            _LOG.warning(
                "browserless_rate_limited attempt=%s/%s retry_in_ms=%s",
                attempt, max_retries, wait_ms,
            )
            sleep(wait_ms / 1000.0)
            delay_ms *= 2
    raise RuntimeError("unreachable")


def _wait_for_ready_marker(page: Any) -> None:
    selector = ", ".join(READY_SELECTORS)
    try:
        page.wait_for_selector(selector, state="attached", timeout=READY_TIMEOUT_MS)
    except PlaywrightTimeoutError:
        title = ""
        try:
            title = page.title()
        except PlaywrightError:
            pass
        raise RenderError(
            f"Report page did not signal ready (title={title!r})",
            stage="render_html",
            code="CONTENT_NOT_LOADED",
            details={"title": title, "selectors": list(READY_SELECTORS)},
        )


def render_pdf_from_url(
    url: str,
    *,
    config: Optional[RendererConfig] = None,
    playwright_factory: Callable[[], Any] = sync_playwright,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
    job_id: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> bytes:
    """Navigate a remote browser to url and return A4 PDF bytes."""
    cfg = config or get_renderer_config()
    stage = "connect_browserless"
    started = time.perf_counter()
    browser = None
    with playwright_factory() as p:
        try:
            browser = connect_with_backoff(
                lambda: p.chromium.connect_over_cdp(cfg.cdp_url, timeout=CONNECT_TIMEOUT_MS),
                sleep=sleep,
                rand=rand,
            )

            stage = "create_context"
            context = browser.new_context(viewport=VIEWPORT)

            stage = "create_page"
            page = context.new_page()
            page.emulate_media(media="print")

            stage = "render_html"
            response = page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
            if response is None:
                raise RenderError("Navigation returned no response", stage=stage)
            if not response.ok:
                raise RenderError(
                    f"Report page returned HTTP {response.status}",
                    stage=stage,
                    details={"status": response.status},
                )
            final_url = page.url or ""
            if any(marker in final_url for marker in AUTH_PATH_MARKERS):
                raise RenderError(
                    "Report page redirected to an auth page; the print token is missing or invalid",
                    stage=stage,
                    code="AUTH_REDIRECT",
                    details={"final_url": final_url},
                )
            _wait_for_ready_marker(page)
            page.evaluate("() => document.fonts.ready.then(() => true)")
            page.wait_for_timeout(FONT_SETTLE_MS)

            stage = "generate_pdf"
            pdf_bytes = page.pdf(format="A4", print_background=True, prefer_css_page_size=True)
        except RenderError as e:
            _LOG.error(
                "remote_render_failed stage=%s code=%s job_id=%s org_id=%s error=%s",
                e.stage, e.code, job_id, organization_id, e,
            )
            raise
        except Exception as e:
            if is_rate_limited(e):
                raise RenderError(
                    "Browserless rate limit reached; retry shortly",
                    stage=stage,
                    code="BROWSERLESS_RATE_LIMITED",
                    retryable=True,
                ) from e
            _LOG.error(
                "remote_render_failed stage=%s job_id=%s org_id=%s error=%s",
                stage, job_id, organization_id, e,
            )
            raise RenderError(f"{stage} failed: {e}", stage=stage) from e
        finally:
            if browser is not None:
                try:
                    browser.close()
                except Exception:
                    _LOG.warning("browser_close_failed stage=%s", stage)
    _LOG.info(
        "remote_render_ok job_id=%s org_id=%s bytes=%s duration_ms=%.0f",
        job_id, organization_id, len(pdf_bytes), (time.perf_counter() - started) * 1000,
    )
    return pdf_bytes
