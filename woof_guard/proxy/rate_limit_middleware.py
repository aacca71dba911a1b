"""ASGI middleware that gates requests through route-matched rate limiters."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from woof_guard.models import RouteRule
from woof_guard.ratelimit.limiter import GateResult, RateLimiter, RequestContext


class RateLimitMiddleware:
    """Runs every limiter whose route rule matches, in rule order.

    The first denial answers 429. Allowed responses carry the headers of the
    last (most specific) gate. Once the downstream status is known each gate
    is settled, which un-counts successful requests for policies that skip
    them.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiters: Mapping[str, RateLimiter],
        rules: Sequence[RouteRule],
        trust_proxy: bool = False,
    ) -> None:
        self.app = app
        self._rules = [
            (rule.method.upper(), re.compile(rule.path), limiters[rule.policy])
            for rule in rules
        ]
        self._trust_proxy = trust_proxy

    def match(self, method: str, path: str) -> list[RateLimiter]:
        gates: list[RateLimiter] = []
        for rule_method, pattern, limiter in self._rules:
            if rule_method not in ("*", method):
                continue
            if pattern.search(path) and limiter not in gates:
                gates.append(limiter)
        return gates

    def client_key(self, request: Request) -> str:
        if self._trust_proxy:
            forwarded = request.headers.get("x-forwarded-for", "")
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return request.client.host if request.client else "unknown"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        gates = self.match(request.method, request.url.path)
        if not gates:
            await self.app(scope, receive, send)
            return

        ctx = RequestContext(client_key=self.client_key(request), path=request.url.path)
        results: list[tuple[RateLimiter, GateResult]] = []
        for limiter in gates:
            result = limiter.check(ctx)
            results.append((limiter, result))
            if not result.allowed:
                response = JSONResponse(result.body(), status_code=429, headers=result.headers())
                await response(scope, receive, send)
                for earlier, earlier_result in results:
                    earlier.complete(ctx, earlier_result, 429)
                return

        rate_headers = results[-1][1].headers()
        status_code = 500

        async def send_with_headers(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = MutableHeaders(scope=message)
                for name, value in rate_headers.items():
                    headers[name] = value
            await send(message)

        try:
            await self.app(scope, receive, send_with_headers)
        finally:
            for limiter, result in results:
                limiter.complete(ctx, result, status_code)
