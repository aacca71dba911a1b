"""Rate limiter factory: binds a policy to a counter store."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from pydantic import ValidationError

from woof_guard.clock import Clock, now_ms
from woof_guard.models import RateLimitPolicy
from woof_guard.ratelimit.policies import InvalidPolicyError
from woof_guard.ratelimit.store import CounterStore
from woof_guard.security.events import SecurityEventLogger
from woof_guard.security.monitor import SecurityMonitor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    client_key: str
    path: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    policy: RateLimitPolicy
    limit: int
    remaining: int
    reset_at: int
    now: int
    bypassed: bool = False

    @property
    def reset_seconds(self) -> int:
        return max(0, math.ceil((self.reset_at - self.now) / 1000))

    def headers(self) -> dict[str, str]:
        """Informational rate limit headers; empty when the gate was bypassed."""
        if self.bypassed:
            return {}
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers

    def body(self) -> dict[str, object]:
        return {
            "success": False,
            "message": self.policy.user_message,
            "code": self.policy.error_code,
        }


class RateLimiter:
    """Request gate for a single policy.

    Use ``create_limiter`` rather than instantiating directly.
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        store: CounterStore,
        monitor: SecurityMonitor | None = None,
        bypass: bool = False,
        clock: Clock | None = None,
    ) -> None:
        self.policy = policy
        self.bypass = bypass
        self._store = store
        self._events = SecurityEventLogger(monitor) if monitor else None
        self._clock = clock or now_ms

    def check(self, ctx: RequestContext) -> GateResult:
        now = self._clock()
        if self.bypass:
            return GateResult(
                allowed=True,
                policy=self.policy,
                limit=self.policy.max_requests,
                remaining=self.policy.max_requests,
                reset_at=now + self.policy.window_ms,
                now=now,
                bypassed=True,
            )

        decision = self._store.check_and_increment(
            self.policy.name,
            ctx.client_key,
            self.policy.max_requests,
            self.policy.window_ms,
            now,
        )
        result = GateResult(
            allowed=decision.allowed,
            policy=self.policy,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_at=decision.reset_at,
            now=now,
        )
        if not decision.allowed:
            self._report_denial(ctx, decision.count)
        return result

    def release(self, client_key: str) -> None:
        """Stop counting a request that turned out successful.

        Only meaningful for policies with ``skip_successful_requests``.
        """
        if self.bypass or not self.policy.skip_successful_requests:
            return
        self._store.decrement(self.policy.name, client_key, self._clock())

    def complete(self, ctx: RequestContext, result: GateResult, status_code: int) -> None:
        """Settle a gated request once its response status is known."""
        if result.allowed and status_code < 400:
            self.release(ctx.client_key)

    def _report_denial(self, ctx: RequestContext, current_count: int) -> None:
        if self._events is None:
            return
        try:
            self._events.rate_limit_exceeded(
                endpoint=self.policy.name,
                ip=ctx.client_key,
                limit=self.policy.max_requests,
                window_ms=self.policy.window_ms,
                current_count=current_count,
                user_id=ctx.user_id,
                path=ctx.path,
            )
        except Exception as exc:  # a denial must be answered even if reporting breaks
            logger.warning("Failed to report rate limit denial for %s: %s", self.policy.name, exc)


def create_limiter(
    policy: RateLimitPolicy,
    store: CounterStore,
    monitor: SecurityMonitor | None = None,
    bypass: bool = False,
    clock: Clock | None = None,
) -> RateLimiter:
    """Create a gate for ``policy``, failing fast on invalid configuration."""
    if not isinstance(policy, RateLimitPolicy):
        raise InvalidPolicyError(f"Expected RateLimitPolicy, got {type(policy).__name__}")
    try:
        RateLimitPolicy.model_validate(policy.model_dump())
    except ValidationError as exc:
        name = getattr(policy, "name", "<unnamed>")
        raise InvalidPolicyError(f"Invalid rate limit policy {name!r}: {exc}") from exc
    return RateLimiter(policy, store, monitor=monitor, bypass=bypass, clock=clock)
