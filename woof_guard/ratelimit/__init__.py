"""Rate limiting for the Woof Meetup API.

This package provides:
- Fixed-window counter stores (in-memory and Redis)
- The endpoint policy catalog
- The limiter factory producing per-policy request gates
"""

from woof_guard.ratelimit.limiter import (
    GateResult,
    RateLimiter,
    RequestContext,
    create_limiter,
)
from woof_guard.ratelimit.policies import (
    DEFAULT_POLICIES,
    InvalidPolicyError,
    load_policies,
    load_route_rules,
)
from woof_guard.ratelimit.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    build_store,
)

__all__ = [
    "CounterStore",
    "DEFAULT_POLICIES",
    "GateResult",
    "InMemoryCounterStore",
    "InvalidPolicyError",
    "RateLimiter",
    "RedisCounterStore",
    "RequestContext",
    "build_store",
    "create_limiter",
    "load_policies",
    "load_route_rules",
]
