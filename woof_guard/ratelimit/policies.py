"""Rate limit policy catalog for the Woof Meetup API.

Each policy can be tuned per deployment through ``<NAME>_RATE_LIMIT_MAX``
and ``<NAME>_RATE_LIMIT_WINDOW_MS`` environment variables.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from pathlib import Path

from pydantic import ValidationError

from woof_guard.models import RateLimitPolicy, RouteRule

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class InvalidPolicyError(ValueError):
    """Raised at startup when rate limit configuration is unusable."""


def _policy(
    name: str,
    max_requests: int,
    window_ms: int,
    user_message: str,
    skip_successful_requests: bool = False,
) -> RateLimitPolicy:
    return RateLimitPolicy(
        name=name,
        max_requests=max_requests,
        window_ms=window_ms,
        user_message=user_message,
        error_code=f"{name}_RATE_LIMIT_EXCEEDED",
        skip_successful_requests=skip_successful_requests,
    )


DEFAULT_POLICIES: tuple[RateLimitPolicy, ...] = (
    _policy(
        "LOGIN", 5, 15 * MINUTE_MS,
        "Too many login attempts from this IP, please try again after 15 minutes",
        skip_successful_requests=True,
    ),
    _policy(
        "SIGNUP", 3, HOUR_MS,
        "Too many signup attempts from this IP, please try again after 1 hour",
    ),
    _policy(
        "PASSWORD_RESET", 3, HOUR_MS,
        "Too many password reset attempts from this IP, please try again after 1 hour",
    ),
    _policy(
        "FORGOT_PASSWORD", 3, HOUR_MS,
        "Too many password reset requests from this IP, please try again after 1 hour",
    ),
    _policy(
        "VERIFY_EMAIL", 5, 15 * MINUTE_MS,
        "Too many email verification attempts from this IP, "
        "please try again after 15 minutes",
        skip_successful_requests=True,
    ),
    _policy(
        "MESSAGE_SENDING", 30, MINUTE_MS,
        "Too many messages sent from this IP, please try again after 1 minute",
    ),
    _policy(
        "MESSAGE_RETRIEVAL", 100, 15 * MINUTE_MS,
        "Too many message requests from this IP, please try again after 15 minutes",
    ),
    _policy(
        "MESSAGE_DELETION", 20, MINUTE_MS,
        "Too many message deletions from this IP, please try again after 1 minute",
    ),
    _policy(
        "GENERAL", 1000, 15 * MINUTE_MS,
        "Too many requests from this IP",
    ),
    _policy(
        "CSRF_TOKEN", 100, 15 * MINUTE_MS,
        "Too many CSRF token requests from this IP",
    ),
    _policy(
        "TURNSTILE", 10, HOUR_MS,
        "Too many verification attempts from this IP, please try again after 1 hour",
        skip_successful_requests=True,
    ),
    _policy(
        "DELETION_ENDPOINT", 1, DAY_MS,
        "Account deletion already initiated, please wait 24 hours",
    ),
    _policy(
        "CHECK_AUTH", 200, 5 * MINUTE_MS,
        "Too many authentication checks",
    ),
    _policy(
        "USER_ENUMERATION", 5, 5 * MINUTE_MS,
        "Too many user queries from this IP, please try again later",
    ),
    _policy(
        "ADD_COORDINATES", 10, 5 * MINUTE_MS,
        "Too many location update requests from this IP, please try again later",
    ),
    _policy(
        "LIKE_ACTION", 30, 5 * MINUTE_MS,
        "Too many like actions, please try again later",
    ),
    _policy(
        "STRIPE_WEBHOOK", 20, MINUTE_MS,
        "Too many webhook requests",
    ),
)


def _env_int(env: Mapping[str, str], var: str) -> int | None:
    raw = env.get(var)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidPolicyError(f"{var} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise InvalidPolicyError(f"{var} must be >= 1, got {value}")
    return value


def apply_overrides(policy: RateLimitPolicy, env: Mapping[str, str]) -> RateLimitPolicy:
    max_requests = _env_int(env, f"{policy.name}_RATE_LIMIT_MAX")
    window_ms = _env_int(env, f"{policy.name}_RATE_LIMIT_WINDOW_MS")
    update: dict[str, int] = {}
    if max_requests is not None:
        update["max_requests"] = max_requests
    if window_ms is not None:
        update["window_ms"] = window_ms
    if not update:
        return policy
    return policy.model_copy(update=update)


def load_policies(env: Mapping[str, str] | None = None) -> dict[str, RateLimitPolicy]:
    """Build the effective policy catalog, keyed by policy name."""
    if env is None:
        env = os.environ
    return {p.name: apply_overrides(p, env) for p in DEFAULT_POLICIES}


def load_route_rules(
    rules_path: str, policies: Mapping[str, RateLimitPolicy],
) -> list[RouteRule]:
    """Load route-to-policy rules and check every rule names a known policy."""
    path = Path(rules_path)
    if not path.exists():
        raise FileNotFoundError(f"Route policy file not found: {rules_path}")
    raw = json.loads(path.read_text())
    try:
        rules = [RouteRule.model_validate(r) for r in raw]
    except ValidationError as exc:
        raise InvalidPolicyError(f"Invalid route rule in {rules_path}: {exc}") from exc

    for rule in rules:
        if rule.policy not in policies:
            raise InvalidPolicyError(
                f"Route {rule.method} {rule.path} references unknown policy {rule.policy!r}",
            )
        try:
            re.compile(rule.path)
        except re.error as exc:
            raise InvalidPolicyError(f"Invalid route pattern {rule.path!r}: {exc}") from exc
    return rules


def matching_policies(rules: list[RouteRule], method: str, path: str) -> list[str]:
    """Names of the policies gating ``method path``, in evaluation order."""
    names: list[str] = []
    for rule in rules:
        if rule.method.upper() not in ("*", method.upper()):
            continue
        if re.search(rule.path, path) and rule.policy not in names:
            names.append(rule.policy)
    return names
