"""FastAPI gateway: rate limits requests and forwards them to the Woof Meetup API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from woof_guard.clock import Clock
from woof_guard.config import GuardSettings
from woof_guard.log import configure_logging
from woof_guard.models import RateLimitPolicy, RouteRule
from woof_guard.proxy.rate_limit_middleware import RateLimitMiddleware
from woof_guard.ratelimit.limiter import RateLimiter, create_limiter
from woof_guard.ratelimit.policies import load_policies, load_route_rules
from woof_guard.ratelimit.store import CounterStore, build_store
from woof_guard.security.alerts import AlertDispatcher, build_sink
from woof_guard.security.monitor import SecurityMonitor

logger = logging.getLogger(__name__)

_HOP_BY_HOP = (
    "content-length", "transfer-encoding", "connection", "keep-alive", "host",
)


@dataclass
class Guard:
    """The wired-up rate limiting components of one gateway process."""

    settings: GuardSettings
    store: CounterStore
    monitor: SecurityMonitor
    policies: dict[str, RateLimitPolicy]
    limiters: dict[str, RateLimiter]
    rules: list[RouteRule]


def build_guard(
    settings: GuardSettings,
    store: CounterStore | None = None,
    monitor: SecurityMonitor | None = None,
    policies: Mapping[str, RateLimitPolicy] | None = None,
    rules: Sequence[RouteRule] | None = None,
    clock: Clock | None = None,
) -> Guard:
    """Wire store, monitor and one limiter per policy. Raises on bad config."""
    if policies is None:
        policies = load_policies()
    if rules is None:
        rules = load_route_rules(settings.route_policies_path, policies)
    if store is None:
        store = build_store(settings.redis_url)
    if monitor is None:
        monitor = SecurityMonitor(
            alert_threshold=settings.alert_threshold,
            window_ms=settings.alert_window_ms,
            dispatcher=AlertDispatcher(build_sink(settings.alert_webhook_url)),
            clock=clock,
        )
    limiters = {
        name: create_limiter(
            policy, store, monitor=monitor, bypass=settings.bypass_rate_limits, clock=clock,
        )
        for name, policy in policies.items()
    }
    if settings.bypass_rate_limits:
        logger.info("Rate limiting bypassed (APP_ENV=%s)", settings.environment)
    return Guard(
        settings=settings,
        store=store,
        monitor=monitor,
        policies=dict(policies),
        limiters=limiters,
        rules=list(rules),
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = GuardSettings.from_env()
    configure_logging(settings.log_level, production=settings.production)
    return create_app(build_guard(settings))


def create_app(
    guard: Guard,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the gateway app with rate limiting in front of the upstream API."""
    upstream_url = guard.settings.upstream_url.rstrip("/")
    dispatcher = guard.monitor.dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        dispatcher.start()
        try:
            yield
        finally:
            await dispatcher.stop()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.guard = guard

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/__guard__/monitor")
    async def monitor_status() -> dict[str, object]:
        return {
            "enforcing": not guard.settings.bypass_rate_limits,
            "alert_threshold": guard.monitor.alert_threshold,
            "window_ms": guard.monitor.window_ms,
            "endpoints": guard.monitor.snapshot(),
        }

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def proxy(request: Request, path: str) -> Response:
        url = f"{upstream_url}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
        if request.client:
            prior = request.headers.get("x-forwarded-for")
            headers["x-forwarded-for"] = (
                f"{prior}, {request.client.host}" if prior else request.client.host
            )

        body = await request.body()
        try:
            async with httpx.AsyncClient(transport=upstream_transport) as client:
                resp = await client.request(
                    method=request.method,
                    url=url,
                    headers=headers,
                    content=body,
                    timeout=30.0,
                )
        except (httpx.ConnectError, httpx.TimeoutException):
            return JSONResponse(
                {"success": False, "message": "Upstream unavailable"},
                status_code=502,
            )
        return Response(
            content=resp.content,
            status_code=resp.status_code,
            headers=_strip_hop_by_hop(resp.headers),
        )

    app.add_middleware(
        RateLimitMiddleware,
        limiters=guard.limiters,
        rules=guard.rules,
        trust_proxy=guard.settings.trust_proxy,
    )

    return app


def _strip_hop_by_hop(headers: httpx.Headers) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _HOP_BY_HOP}
