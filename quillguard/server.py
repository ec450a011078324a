"""Guarded control app, background sweeper and CLI entry points."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI

from .guard import Guard
from .middleware import ShieldMiddleware
from .policy import load_policy
from .rate_limit import RateLimiter
from .request import SimpleRequest
from .types import Metrics

logger = logging.getLogger(__name__)


async def run_sweeper(limiter: RateLimiter, interval: float) -> None:
    """Periodically drop expired rate limit entries until cancelled."""

    while True:
        await asyncio.sleep(interval)
        removed = limiter.sweep()
        if removed:
            logger.debug("swept %d expired rate limit entries", removed)


def create_app(guard: Guard, metrics: Metrics | None = None) -> FastAPI:
    metrics = metrics if metrics is not None else Metrics()
    interval = guard.policy.rate_limit.sweep_interval_sec

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = asyncio.create_task(run_sweeper(guard.rate_limiter, interval)) if interval > 0 else None
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(ShieldMiddleware, guard=guard, metrics=metrics)
    app.state.guard = guard
    app.state.metrics = metrics

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/metrics")
    async def metrics_endpoint() -> dict[str, Any]:
        return metrics.to_dict()

    @app.get("/api/admin/security-stats")
    async def security_stats() -> dict[str, Any]:
        return guard.rate_limiter.stats().to_dict()

    return app


async def run_server(args: argparse.Namespace) -> None:
    policy = load_policy(args.policy)
    guard = Guard(policy)
    app = create_app(guard)
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()


def run_check(args: argparse.Namespace) -> None:
    policy = load_policy(args.policy)
    guard = Guard(policy)
    headers = {"x-forwarded-for": args.ip}
    for name, value in (
        ("origin", args.origin),
        ("referer", args.referer),
        ("content-type", args.content_type),
    ):
        if value:
            headers[name] = value
    request = SimpleRequest(method=args.method.upper(), url=args.path, headers=headers)
    decision = guard.evaluate(request, category=args.category)
    if decision.response is not None:
        print("DENY", decision.response.status_code, decision.response.body.get("error"))
        return
    remaining = decision.rate_limit.remaining if decision.rate_limit else None
    print("ALLOW", decision.category, remaining)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quillguard", description="Request defense middleware")
    sub = parser.add_subparsers(dest="command")

    serve_cmd = sub.add_parser("serve", help="Run the guarded control app")
    serve_cmd.add_argument("--policy", required=True)
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8787)

    check_cmd = sub.add_parser("check", help="Evaluate a single request against the policy")
    check_cmd.add_argument("--policy", required=True)
    check_cmd.add_argument("--method", default="GET")
    check_cmd.add_argument("--path", default="/")
    check_cmd.add_argument("--category")
    check_cmd.add_argument("--origin")
    check_cmd.add_argument("--referer")
    check_cmd.add_argument("--content-type", dest="content_type")
    check_cmd.add_argument("--ip", default="127.0.0.1")

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "serve":
        asyncio.run(run_server(args))
    elif args.command == "check":
        run_check(args)
    else:
        parser.print_help()
