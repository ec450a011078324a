"""Origin-based CSRF protection.

This is a provenance heuristic, not token verification: it stops
browser-driven cross-site form and fetch submissions, but a non-browser
client that forges ``Origin``/``Referer`` gets through.
"""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import urlsplit

from .policy import HeaderSettings, MessageSettings, OriginSettings
from .request import IncomingRequest, normalized_headers
from .security_log import SecurityLogger
from .types import GuardResponse, SecurityEventType, Severity

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_origin(url: str) -> str | None:
    """Reduce an Origin or Referer value to ``scheme://host[:port]``; ``None`` if malformed."""

    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    scheme = parts.scheme.lower()
    if ":" in host:
        host = f"[{host}]"
    origin = f"{scheme}://{host}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        origin = f"{origin}:{port}"
    return origin


class OriginGuard:
    """Rejects cross-origin or oddly typed state-changing requests."""

    def __init__(
        self,
        settings: OriginSettings,
        *,
        security_log: SecurityLogger | None = None,
        headers: HeaderSettings | None = None,
        messages: MessageSettings | None = None,
    ) -> None:
        self.settings = settings
        self.security_log = security_log
        self.header_settings = headers or HeaderSettings()
        self.messages = messages or MessageSettings()
        self._allowed = frozenset(normalize_origin(origin) or origin for origin in settings.allowed_origins)

    def origin_allowed(self, headers: Mapping[str, str]) -> bool:
        origin = headers.get("origin")
        if origin:
            return normalize_origin(origin) in self._allowed
        referer = headers.get("referer")
        if referer:
            return normalize_origin(referer) in self._allowed
        return False

    def validate_origin(self, request: IncomingRequest) -> bool:
        return self.origin_allowed(normalized_headers(request))

    def check(self, request: IncomingRequest, operation: str = "general") -> GuardResponse | None:
        """Return a rejection for ``request`` or ``None`` to let it through."""

        method = (request.method or "").upper()
        if method not in self.settings.protected_methods:
            return None

        headers = normalized_headers(request)
        if not self.origin_allowed(headers):
            self._log(
                Severity.HIGH,
                {
                    "operation": operation,
                    "reason": "Invalid origin header",
                    "origin": headers.get("origin"),
                    "referer": headers.get("referer"),
                    "user_agent": headers.get("user-agent"),
                },
                request,
            )
            return GuardResponse(status_code=403, body={"error": self.messages.csrf_blocked})

        if method in self.settings.body_methods:
            content_type = headers.get("content-type")
            if not content_type or not any(
                allowed in content_type.lower() for allowed in self.settings.allowed_content_types
            ):
                self._log(
                    Severity.MEDIUM,
                    {
                        "operation": operation,
                        "reason": "Invalid content-type",
                        "content_type": content_type,
                        "method": method,
                    },
                    request,
                )
                return GuardResponse(status_code=400, body={"error": self.messages.content_type_blocked})
        return None

    def _log(self, severity: Severity, details: dict[str, Any], request: IncomingRequest) -> None:
        if self.security_log is not None:
            self.security_log.log_event(SecurityEventType.SUSPICIOUS_ACTIVITY, severity, details, request)

    def add_security_headers(self, response: Any) -> Any:
        """Set the defense-in-depth headers on any outgoing response."""

        for name, value in {**self.header_settings.security, **self.header_settings.extra}.items():
            response.headers[name] = value
        return response
