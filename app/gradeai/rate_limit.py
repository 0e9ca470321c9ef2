"""
In-memory fixed-window rate limiter for the auth and API endpoints.

The store is process-local: with several gunicorn workers each worker keeps its
own counters, which is acceptable for signup/login abuse protection.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from flask import Request, current_app, jsonify, request

logger = logging.getLogger(__name__)

_CLEANUP_INTERVAL_SECONDS = 5 * 60
_LOCALHOST_IPS = {"127.0.0.1", "::1", "localhost", "::ffff:127.0.0.1", "unknown"}


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int
    reset_time: float  # epoch seconds
    retry_after: int  # whole seconds, 0 when allowed


@dataclass
class _Entry:
    count: int
    reset_time: float


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: float, *, clock: Callable[[], float] = time.time):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, identifier: str) -> RateLimitResult:
        """Count one request for `identifier` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)
            entry = self._store.get(identifier)

            if entry is None or now >= entry.reset_time:
                reset_time = now + self.window_seconds
                self._store[identifier] = _Entry(count=1, reset_time=reset_time)
                return RateLimitResult(True, self.max_requests - 1, reset_time, 0)

            if entry.count >= self.max_requests:
                retry_after = math.ceil(entry.reset_time - now)
                logger.info(
                    "Rate limit blocked %s (%s/%s requests, retry after %ss)",
                    identifier,
                    entry.count,
                    self.max_requests,
                    retry_after,
                )
                return RateLimitResult(False, 0, entry.reset_time, retry_after)

            entry.count += 1
            return RateLimitResult(True, self.max_requests - entry.count, entry.reset_time, 0)

    def status(self, identifier: str) -> RateLimitResult:
        """Current state for `identifier` without counting a request."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(identifier)
            if entry is None or now >= entry.reset_time:
                return RateLimitResult(True, self.max_requests, now + self.window_seconds, 0)
            remaining = max(0, self.max_requests - entry.count)
            retry_after = math.ceil(entry.reset_time - now) if remaining == 0 else 0
            return RateLimitResult(remaining > 0, remaining, entry.reset_time, retry_after)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._store.pop(identifier, None)

    def cleanup(self) -> int:
        """Drop expired windows. Returns how many entries were removed."""
        with self._lock:
            return self._cleanup(self._clock())

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup >= _CLEANUP_INTERVAL_SECONDS:
            self._cleanup(now)

    def _cleanup(self, now: float) -> int:
        expired = [k for k, e in self._store.items() if now >= e.reset_time]
        for k in expired:
            del self._store[k]
        self._last_cleanup = now
        if expired:
            logger.debug("Rate limit cleanup removed %s expired entries", len(expired))
        return len(expired)


def get_client_ip(req: Request) -> str:
    """Client IP from proxy headers (Vercel, generic proxy, Cloudflare, nginx), then the socket."""
    headers = req.headers
    for name in ("x-vercel-forwarded-for", "x-forwarded-for"):
        value = headers.get(name)
        if value:
            return value.split(",")[0].strip()
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    return req.remote_addr or "unknown"


def is_localhost(ip: str) -> bool:
    return ip in _LOCALHOST_IPS


def rate_limit_response(result: RateLimitResult, message: str = "Too many requests. Please try again later."):
    resp = jsonify({"success": False, "error": message, "retryAfter": result.retry_after})
    resp.status_code = 429
    resp.headers["Retry-After"] = str(result.retry_after)
    resp.headers["X-RateLimit-Remaining"] = "0"
    resp.headers["X-RateLimit-Reset"] = str(int(result.reset_time))
    return resp


def enforce(limiter: RateLimiter, message: str = "Too many requests. Please try again later."):
    """
    Count the current request against `limiter`. Returns a 429 response when blocked, else None.

    Localhost is exempt outside production.
    """
    if not current_app.config.get("RATE_LIMIT_ENABLED", True):
        return None
    ip = get_client_ip(request)
    env = (current_app.config.get("ENV") or "").strip().lower()
    if is_localhost(ip) and env not in ("prod", "production"):
        return None
    result = limiter.check(ip)
    if not result.success:
        current_app.logger.warning("Rate limit exceeded for %s on %s", ip, request.path)
        return rate_limit_response(result, message)
    return None


# Preconfigured limiters
signup_limiter = RateLimiter(5, 60 * 60)  # 5 per hour
login_limiter = RateLimiter(10, 60 * 60)  # 10 per hour
api_limiter = RateLimiter(100, 60)  # 100 per minute
