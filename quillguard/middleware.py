"""Starlette/FastAPI middleware applying the guard to every API request."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .guard import Guard
from .types import Metrics

logger = logging.getLogger(__name__)


class ShieldMiddleware(BaseHTTPMiddleware):
    """Runs the origin and rate limit gates before the route handler.

    Paths outside the policy's ``protected_prefixes`` skip both gates but
    still receive the security headers.
    """

    def __init__(self, app: ASGIApp, guard: Guard, metrics: Metrics | None = None) -> None:
        super().__init__(app)
        self.guard = guard
        self.metrics = metrics if metrics is not None else Metrics()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if not self.guard.policy.is_protected(path):
            response = await call_next(request)
            return self.guard.finalize(response)

        decision = self.guard.evaluate(request, path=path)
        self.metrics.record(decision.response)
        if decision.response is not None:
            logger.debug(
                "rejected %s %s category=%s status=%s",
                request.method,
                path,
                decision.category,
                decision.response.status_code,
            )
            return self.guard.finalize(decision.response.to_response())

        try:
            response = await call_next(request)
        except Exception:
            self.metrics.errors += 1
            raise
        return self.guard.finalize(response, decision)
