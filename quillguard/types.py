"""Shared data structures for quillguard."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class SecurityEventType(str, Enum):
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    RATE_LIMIT_HIT = "RATE_LIMIT_HIT"
    UPLOAD_ATTEMPT = "UPLOAD_ATTEMPT"
    UPLOAD_BLOCKED = "UPLOAD_BLOCKED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    DATA_BREACH_ATTEMPT = "DATA_BREACH_ATTEMPT"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    MALICIOUS_INPUT = "MALICIOUS_INPUT"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EndpointCategory(str, Enum):
    """Endpoint categories with a documented rate policy."""

    DEFAULT = "default"
    AUTH = "auth"
    UPLOAD = "upload"
    ADMIN = "admin"
    COMMENTS = "comments"


@dataclass(slots=True)
class RateLimitEntry:
    """Fixed-window counter for a single key."""

    key: str
    count: int
    window_reset_at: float
    rejected: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.window_reset_at


@dataclass(slots=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    ``reset_at`` is epoch milliseconds, ``retry_after`` is whole seconds.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0


@dataclass(slots=True)
class RateLimitStats:
    """Snapshot of the limiter store."""

    total_entries: int = 0
    active_entries: int = 0
    expired_entries: int = 0
    total_requests: int = 0
    average_requests_per_entry: int = 0
    top_categories: dict[str, int] = field(default_factory=dict)
    top_ips: dict[str, int] = field(default_factory=dict)
    limits: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "active_entries": self.active_entries,
            "expired_entries": self.expired_entries,
            "total_requests": self.total_requests,
            "average_requests_per_entry": self.average_requests_per_entry,
            "top_categories": dict(self.top_categories),
            "top_ips": dict(self.top_ips),
            "limits": {name: dict(limit) for name, limit in self.limits.items()},
        }


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Request attributes captured alongside a security event."""

    ip: str
    user_agent: str
    url: str
    method: str
    referer: str

    def to_dict(self) -> dict[str, str]:
        return {
            "ip": self.ip,
            "user_agent": self.user_agent,
            "url": self.url,
            "method": self.method,
            "referer": self.referer,
        }


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    """Immutable record of a security-relevant occurrence."""

    timestamp: str
    event_type: SecurityEventType
    severity: Severity
    details: Mapping[str, Any]
    request: Optional[RequestContext]
    correlation_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event": self.event_type.value,
            "severity": self.severity.value,
            "details": dict(self.details),
            "request": self.request.to_dict() if self.request else {},
            "correlation_id": self.correlation_id,
        }


@dataclass(slots=True)
class LogResult:
    """Outcome of a logger write. Callers are free to ignore it."""

    written: bool
    event: Optional[SecurityEvent] = None
    error: Optional[str] = None


@dataclass(slots=True)
class GuardResponse:
    """Terminal response produced by a gate that rejected a request."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    def to_response(self) -> Any:
        from starlette.responses import JSONResponse

        return JSONResponse(status_code=self.status_code, content=self.body, headers=self.headers)


@dataclass(slots=True)
class Metrics:
    """Simple counter metrics for the guarded app."""

    allowed: int = 0
    rate_limited: int = 0
    csrf_blocked: int = 0
    errors: int = 0

    def record(self, response: GuardResponse | None) -> None:
        if response is None:
            self.allowed += 1
        elif response.status_code == 429:
            self.rate_limited += 1
        else:
            self.csrf_blocked += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "rate_limited": self.rate_limited,
            "csrf_blocked": self.csrf_blocked,
            "errors": self.errors,
        }


@dataclass(slots=True)
class GuardDecision:
    """Combined outcome of the origin and rate limit gates for one request."""

    category: str
    operation: str
    response: Optional[GuardResponse] = None
    rate_limit: Optional[RateLimitResult] = None

    @property
    def allowed(self) -> bool:
        return self.response is None
