"""
Remote renderer pipeline against an in-process fake of the Playwright sync API.
"""
from __future__ import annotations

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from reporting.remote_renderer import (
    DEFAULT_BROWSERLESS_URL,
    RenderError,
    RendererConfig,
    connect_with_backoff,
    get_renderer_config,
    render_pdf_from_url,
)

CONFIG = RendererConfig(base_url="wss://renderer.test", token="tok")


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status
        self.ok = 200 <= status < 300


class FakePage:
    def __init__(self, status=200, final_url="https://app.test/reports/job-1/print", ready=True):
        self.status = status
        self.url = final_url
        self.ready = ready
        self.calls: list[str] = []

    def emulate_media(self, media):
        self.calls.append(f"media:{media}")

    def goto(self, url, wait_until, timeout):
        self.calls.append("goto")
        return FakeResponse(self.status)

    def wait_for_selector(self, selector, state, timeout):
        if not self.ready:
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded")
        assert '[data-report-ready="true"]' in selector

    def title(self):
        return "Loading"

    def evaluate(self, script):
        return True

    def wait_for_timeout(self, ms):
        pass

    def pdf(self, **kwargs):
        assert kwargs["format"] == "A4"
        assert kwargs["print_background"] is True
        return b"%PDF-1.4 fake"


class FakeBrowser:
    def __init__(self, page):
        self.page = page
        self.closed = False

    def new_context(self, viewport):
        return self

    def new_page(self):
        return self.page

    def close(self):
        self.closed = True


class FakePlaywright:
    def __init__(self, browser, connect_errors=()):
        self.browser = browser
        self.connect_errors = list(connect_errors)
        self.connect_attempts = 0
        self.chromium = self

    def connect_over_cdp(self, url, timeout):
        self.connect_attempts += 1
        assert url.startswith("wss://renderer.test?token=tok")
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        return self.browser

    def __call__(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _render(fake, url="https://app.test/reports/job-1/print?token=x"):
    return render_pdf_from_url(url, config=CONFIG, playwright_factory=fake, sleep=lambda s: None, rand=lambda: 0.0)


def test_render_success_closes_browser():
    page = FakePage()
    browser = FakeBrowser(page)
    assert _render(FakePlaywright(browser)) == b"%PDF-1.4 fake"
    assert browser.closed
    assert page.calls[0] == "media:print"


def test_http_error_reports_render_stage():
    browser = FakeBrowser(FakePage(status=500))
    with pytest.raises(RenderError) as exc:
        _render(FakePlaywright(browser))
    assert exc.value.stage == "render_html"
    assert exc.value.details == {"status": 500}
    assert browser.closed


def test_auth_redirect_detected():
    browser = FakeBrowser(FakePage(final_url="https://app.test/login?next=/reports"))
    with pytest.raises(RenderError) as exc:
        _render(FakePlaywright(browser))
    assert exc.value.code == "AUTH_REDIRECT"


def test_missing_ready_marker():
    browser = FakeBrowser(FakePage(ready=False))
    with pytest.raises(RenderError) as exc:
        _render(FakePlaywright(browser))
    assert exc.value.code == "CONTENT_NOT_LOADED"
    assert exc.value.details["title"] == "Loading"


def test_connect_retries_on_429_then_succeeds():
    browser = FakeBrowser(FakePage())
    fake = FakePlaywright(browser, connect_errors=[Exception("429 Too Many Requests")] * 2)
    assert _render(fake) == b"%PDF-1.4 fake"
    assert fake.connect_attempts == 3


def test_connect_rate_limit_exhausted_is_retryable():
    fake = FakePlaywright(FakeBrowser(FakePage()), connect_errors=[Exception("429 Too Many Requests")] * 5)
    with pytest.raises(RenderError) as exc:
        _render(fake)
    assert exc.value.code == "BROWSERLESS_RATE_LIMITED"
    assert exc.value.retryable
    assert fake.connect_attempts == 5


def test_non_rate_limit_connect_error_not_retried():
    fake = FakePlaywright(FakeBrowser(FakePage()), connect_errors=[Exception("connection refused")])
    with pytest.raises(RenderError) as exc:
        _render(fake)
    assert exc.value.stage == "connect_browserless"
    assert fake.connect_attempts == 1


def test_backoff_delays_double_with_jitter():
    waits: list[float] = []
    attempts = {"n": 0}

    def connect():
        attempts["n"] += 1
        if attempts["n"] < 4:
            raise Exception("rate limit reached")
        return "ok"

    assert connect_with_backoff(connect, sleep=waits.append, rand=lambda: 0.5) == "ok"
    assert waits == [0.625, 1.125, 2.125]


def test_renderer_config_from_env(monkeypatch):
    monkeypatch.delenv("BROWSERLESS_TOKEN", raising=False)
    with pytest.raises(RenderError) as exc:
        get_renderer_config()
    assert exc.value.code == "RENDERER_NOT_CONFIGURED"

    monkeypatch.setenv("BROWSERLESS_TOKEN", "abc")
    monkeypatch.delenv("BROWSERLESS_URL", raising=False)
    cfg = get_renderer_config()
    assert cfg.base_url == DEFAULT_BROWSERLESS_URL
    assert "token=abc" in cfg.cdp_url

    monkeypatch.setenv("BROWSERLESS_URL", "wss://chrome.browserless.io")
    with pytest.raises(RenderError):
        get_renderer_config()
