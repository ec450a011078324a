"""Fixed-window rate limiting.

Counters live in an in-process dict keyed by ``<ip>:<category>``. A window
that has elapsed is reset on the next request for its key, so bursts that
straddle a window boundary are admitted. Memory is bounded two ways: an
O(n) sweep of expired entries that runs at most once per
``sweep_interval_sec`` (or from a background task via ``sweep()``), and a
hard cap that evicts the entries with the oldest reset time.
"""

from __future__ import annotations

import heapq
import logging
import math
import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, Optional

from .policy import RateLimitSettings
from .request import FORWARDED_HEADERS, IncomingRequest, client_ip, normalized_headers
from .security_log import SecurityLogger
from .types import EndpointCategory, GuardResponse, RateLimitEntry, RateLimitResult, RateLimitStats

logger = logging.getLogger(__name__)

TimeFunc = Callable[[], float]


class RateLimiter:
    """Per-key fixed-window counter safe for use from many threads."""

    def __init__(
        self,
        settings: RateLimitSettings,
        *,
        security_log: SecurityLogger | None = None,
        time_func: TimeFunc | None = None,
        rejection_message: str = "Too many requests. Try again later.",
    ) -> None:
        self.settings = settings
        self.security_log = security_log
        self.rejection_message = rejection_message
        self._time = time_func or time.time
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = self._time()

    def __len__(self) -> int:
        return len(self._entries)

    def check(
        self,
        key: str,
        category: str | EndpointCategory = EndpointCategory.DEFAULT,
        request: Optional[IncomingRequest] = None,
    ) -> RateLimitResult:
        """Count one request for ``key`` and decide whether to admit it."""

        if isinstance(category, EndpointCategory):
            category = category.value
        policy = self.settings.for_category(category)
        window = policy.window_ms / 1000.0
        attempts = 0
        with self._lock:
            now = self._time()
            if now - self._last_sweep >= self.settings.sweep_interval_sec:
                self._sweep_locked(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(key=key, count=0, window_reset_at=now + window)
                self._entries[key] = entry
                if len(self._entries) > self.settings.max_entries:
                    self._evict_locked(keep=key)
            elif entry.expired(now):
                entry.count = 0
                entry.rejected = 0
                entry.window_reset_at = now + window

            if entry.count >= policy.max_requests:
                entry.rejected += 1
                attempts = entry.count + entry.rejected
                result = RateLimitResult(
                    allowed=False,
                    limit=policy.max_requests,
                    remaining=0,
                    reset_at=int(entry.window_reset_at * 1000),
                    retry_after=max(1, math.ceil(entry.window_reset_at - now)),
                )
            else:
                entry.count += 1
                result = RateLimitResult(
                    allowed=True,
                    limit=policy.max_requests,
                    remaining=policy.max_requests - entry.count,
                    reset_at=int(entry.window_reset_at * 1000),
                )

        if not result.allowed and self.security_log is not None:
            self.security_log.log_rate_limit_hit(category, attempts, request)
        return result

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""

        with self._lock:
            return self._sweep_locked(self._time())

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        if len(self._entries) > self.settings.max_entries:
            self._evict_locked()
        return len(expired)

    def _evict_locked(self, keep: str | None = None) -> None:
        size = len(self._entries)
        # Always get back under the cap, even when the fraction rounds to zero.
        count = max(size - self.settings.max_entries, int(size * self.settings.evict_fraction))
        candidates = (entry for key, entry in self._entries.items() if key != keep)
        oldest = heapq.nsmallest(count, candidates, key=lambda entry: entry.window_reset_at)
        for entry in oldest:
            del self._entries[entry.key]
        logger.warning("rate limit store over capacity, evicted %d entries", len(oldest))

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def stats(self, top: int = 10) -> RateLimitStats:
        with self._lock:
            now = self._time()
            entries = list(self._entries.values())
        stats = RateLimitStats(
            total_entries=len(entries),
            limits={
                name: {"max_requests": policy.max_requests, "window_ms": policy.window_ms}
                for name, policy in self.settings.categories.items()
            },
        )
        by_category: Counter[str] = Counter()
        by_ip: Counter[str] = Counter()
        for entry in entries:
            if entry.expired(now):
                stats.expired_entries += 1
                continue
            stats.active_entries += 1
            ip, _, category = entry.key.rpartition(":")
            by_category[category] += entry.count
            by_ip[ip or entry.key] += entry.count
            stats.total_requests += entry.count
        if stats.active_entries:
            stats.average_requests_per_entry = round(stats.total_requests / stats.active_entries)
        stats.top_categories = dict(by_category.most_common(top))
        stats.top_ips = dict(by_ip.most_common(top))
        return stats


def client_key(request: IncomingRequest, category: str | EndpointCategory) -> str:
    if isinstance(category, EndpointCategory):
        category = category.value
    return f"{client_ip(normalized_headers(request), FORWARDED_HEADERS)}:{category}"


def rejection_response(result: RateLimitResult, message: str) -> GuardResponse:
    return GuardResponse(
        status_code=429,
        body={"error": message, "retryAfter": result.retry_after},
        headers={
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
            "Retry-After": str(result.retry_after),
        },
    )


def rate_limit_response(
    limiter: RateLimiter,
    request: IncomingRequest,
    category: str | EndpointCategory = EndpointCategory.DEFAULT,
) -> GuardResponse | None:
    """Apply ``limiter`` to ``request``; return a 429 response or ``None``."""

    result = limiter.check(client_key(request, category), category, request)
    if result.allowed:
        return None
    return rejection_response(result, limiter.rejection_message)


def add_rate_limit_headers(response: Any, result: RateLimitResult) -> Any:
    """Expose the current quota on an outgoing response."""

    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset_at)
    return response
