"""Core guard facade."""

from __future__ import annotations

import logging
from typing import Any, Callable
from urllib.parse import urlsplit

from .csrf import OriginGuard
from .heuristics import AttackClassifier
from .policy import Policy
from .rate_limit import RateLimiter, add_rate_limit_headers, client_key, rejection_response
from .request import IncomingRequest
from .security_log import AlertHook, SecurityLogger
from .types import EndpointCategory, GuardDecision, GuardResponse, RateLimitResult


class Guard:
    """Wires the security logger, origin guard and rate limiter from a policy.

    One instance is meant to live for the whole process and be shared by
    every request handler.
    """

    def __init__(
        self,
        policy: Policy,
        *,
        time_func: Callable[[], float] | None = None,
        alert_hook: AlertHook | None = None,
        classifier: AttackClassifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.policy = policy
        self.security_log = SecurityLogger(
            policy.logging,
            alert_hook=alert_hook,
            classifier=classifier,
            logger=logger,
        )
        self.rate_limiter = RateLimiter(
            policy.rate_limit,
            security_log=self.security_log,
            time_func=time_func,
            rejection_message=policy.messages.rate_limited,
        )
        self.origin_guard = OriginGuard(
            policy.origins,
            security_log=self.security_log,
            headers=policy.headers,
            messages=policy.messages,
        )

    def check_rate_limit(self, key: str, category: str | EndpointCategory = "default") -> RateLimitResult:
        return self.rate_limiter.check(key, category)

    def csrf_check(self, request: IncomingRequest, operation: str = "general") -> GuardResponse | None:
        return self.origin_guard.check(request, operation)

    def evaluate(
        self,
        request: IncomingRequest,
        *,
        category: str | EndpointCategory | None = None,
        operation: str | None = None,
        path: str | None = None,
    ) -> GuardDecision:
        """Run the origin gate, then the rate limit gate.

        Without an explicit ``category`` the request path is matched against
        the policy's route rules.
        """

        rule = self.policy.route_for(path if path is not None else _path_of(request))
        if isinstance(category, EndpointCategory):
            category = category.value
        category = category or rule.category
        operation = operation or rule.operation or category
        decision = GuardDecision(category=category, operation=operation)

        decision.response = self.origin_guard.check(request, operation)
        if decision.response is not None:
            return decision

        result = self.rate_limiter.check(client_key(request, category), category, request)
        decision.rate_limit = result
        if not result.allowed:
            decision.response = rejection_response(result, self.rate_limiter.rejection_message)
        return decision

    def protect(
        self,
        request: IncomingRequest,
        *,
        category: str | EndpointCategory | None = None,
        operation: str | None = None,
    ) -> GuardResponse | None:
        """Return a terminal response if the request must be refused."""

        return self.evaluate(request, category=category, operation=operation).response

    def finalize(self, response: Any, decision: GuardDecision | None = None) -> Any:
        """Attach security and quota headers to an outgoing response."""

        self.origin_guard.add_security_headers(response)
        if decision is not None and decision.rate_limit is not None and decision.rate_limit.allowed:
            add_rate_limit_headers(response, decision.rate_limit)
        return response


def _path_of(request: IncomingRequest) -> str:
    url = request.url
    path = getattr(url, "path", None)
    if path is not None:
        return path
    return urlsplit(str(url)).path or "/"
