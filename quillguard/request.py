"""Incoming-request abstraction and context extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from .types import RequestContext

FORWARDED_HEADERS: tuple[str, ...] = ("x-forwarded-for", "x-real-ip")
CDN_HEADERS: tuple[str, ...] = FORWARDED_HEADERS + ("cf-connecting-ip",)


class IncomingRequest(Protocol):
    """Anything exposing a method, a URL and a header mapping.

    Starlette's ``Request`` satisfies this protocol as is.
    """

    method: str

    @property
    def url(self) -> Any: ...

    @property
    def headers(self) -> Mapping[str, str]: ...


@dataclass(slots=True)
class SimpleRequest:
    """Plain request used by the CLI and in tests."""

    method: str = "GET"
    url: str = "/"
    headers: dict[str, str] = field(default_factory=dict)


def normalized_headers(request: IncomingRequest | None) -> dict[str, str]:
    if request is None:
        return {}
    return {k.lower(): v for k, v in (request.headers or {}).items()}


def client_ip(headers: Mapping[str, str], sources: Sequence[str] = FORWARDED_HEADERS) -> str:
    """Return the client IP from proxy headers, or ``"unknown"``.

    ``headers`` must have lower-case keys. For ``x-forwarded-for`` only the
    first element of the chain is used. Traffic without any of these headers
    shares the ``"unknown"`` identity.
    """

    for name in sources:
        value = headers.get(name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return "unknown"


def request_context(request: IncomingRequest) -> RequestContext:
    headers = normalized_headers(request)
    return RequestContext(
        ip=client_ip(headers, CDN_HEADERS),
        user_agent=headers.get("user-agent") or "unknown",
        url=str(request.url),
        method=(request.method or "").upper(),
        referer=headers.get("referer") or "none",
    )
