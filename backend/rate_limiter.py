"""
In-memory fixed-window rate limiter for expensive endpoints (exports, PDFs, bulk ops).

Keyed by organization + user (+ path). Process-local: every uvicorn worker keeps
its own counts, so this does not hold across instances. Swap the store for Redis
before running more than one worker.
"""
from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request, Response

from auth import AuthContext, require_org_context
from errors import ApiError

_LOG = logging.getLogger("uvicorn.error")

CLEANUP_INTERVAL_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    key_prefix: str


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds
    retry_after: int  # seconds

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at,
            "retryAfter": self.retry_after,
        }


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _LOG.warning("rate_limit_bad_env name=%s value=%r using=%s", name, raw, default)
        return default


EXPORT_RATE_LIMIT = RateLimitConfig(
    window_ms=_env_int("RATE_LIMIT_EXPORT_WINDOW_MS", 60 * 60 * 1000),
    max_requests=_env_int("RATE_LIMIT_EXPORT_MAX_REQUESTS", 10),
    key_prefix="export",
)
PDF_RATE_LIMIT = RateLimitConfig(
    window_ms=_env_int("RATE_LIMIT_PDF_WINDOW_MS", 60 * 60 * 1000),
    max_requests=_env_int("RATE_LIMIT_PDF_MAX_REQUESTS", 20),
    key_prefix="pdf",
)
BULK_RATE_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=60, key_prefix="bulk")
MUTATION_RATE_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=120, key_prefix="mutation")


class RateLimiter:
    """Fixed-window counter store. now_ms is injectable for tests."""

    def __init__(self, now_ms: Callable[[], float] | None = None):
        self._now_ms = now_ms or (lambda: time.time() * 1000)
        self._store: dict[str, tuple[int, float]] = {}  # key -> (count, reset_ms)
        self._lock = threading.Lock()
        self._last_cleanup = self._now_ms()

    @staticmethod
    def key_for(config: RateLimitConfig, organization_id: str, user_id: str, path: Optional[str] = None) -> str:
        key = f"{config.key_prefix}:{organization_id}:{user_id}"
        return f"{key}:{path}" if path else key

    def check(
        self,
        organization_id: str,
        user_id: str,
        config: RateLimitConfig,
        path: Optional[str] = None,
    ) -> RateLimitResult:
        now = self._now_ms()
        key = self.key_for(config, organization_id, user_id, path)
        with self._lock:
            if now - self._last_cleanup >= CLEANUP_INTERVAL_MS:
                self._cleanup_locked(now)
            entry = self._store.get(key)
            if entry is None or entry[1] <= now:
                reset_ms = now + config.window_ms
                self._store[key] = (1, reset_ms)
                return RateLimitResult(
                    allowed=True,
                    limit=config.max_requests,
                    remaining=max(0, config.max_requests - 1),
                    reset_at=math.ceil(reset_ms / 1000),
                    retry_after=math.ceil(config.window_ms / 1000),
                )
            count, reset_ms = entry
            if count >= config.max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=config.max_requests,
                    remaining=0,
                    reset_at=math.ceil(reset_ms / 1000),
                    retry_after=max(1, math.ceil((reset_ms - now) / 1000)),
                )
            count += 1
            self._store[key] = (count, reset_ms)
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=max(0, config.max_requests - count),
                reset_at=math.ceil(reset_ms / 1000),
                retry_after=max(1, math.ceil((reset_ms - now) / 1000)),
            )

    def _cleanup_locked(self, now: float) -> int:
        expired = [k for k, (_, reset_ms) in self._store.items() if reset_ms < now]
        for k in expired:
            del self._store[k]
        self._last_cleanup = now
        return len(expired)

    def run_cleanup(self, now_ms: Optional[float] = None) -> int:
        """Drop expired windows. Returns how many entries were removed."""
        with self._lock:
            return self._cleanup_locked(self._now_ms() if now_ms is None else now_ms)

    def reset(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _limiter


def check_rate_limit(
    organization_id: str,
    user_id: str,
    config: RateLimitConfig,
    path: Optional[str] = None,
) -> RateLimitResult:
    return _limiter.check(organization_id, user_id, config, path)


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def rate_limit(config: RateLimitConfig, per_path: bool = False):
    """FastAPI dependency: 429 ApiError when over limit, X-RateLimit-* headers otherwise."""

    def _dependency(
        request: Request,
        response: Response,
        ctx: AuthContext = Depends(require_org_context),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        path = request.url.path if per_path else None
        result = limiter.check(ctx.organization_id, ctx.user_id, config, path)
        headers = rate_limit_headers(result)
        if not result.allowed:
            _LOG.warning(
                "rate_limited prefix=%s org_id=%s user_id=%s retry_after=%s",
                config.key_prefix, ctx.organization_id, ctx.user_id, result.retry_after,
            )
            raise ApiError(
                "RATE_LIMIT_EXCEEDED",
                message=f"Too many {config.key_prefix} requests. Try again in {result.retry_after} seconds.",
                details=result.to_dict(),
                retry_after_seconds=result.retry_after,
                headers=headers,
            )
        response.headers.update(headers)
        return result

    return _dependency
