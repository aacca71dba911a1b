"""Runtime settings read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from woof_guard.security.monitor import DEFAULT_ALERT_THRESHOLD, DEFAULT_ALERT_WINDOW_MS

_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GuardSettings:
    upstream_url: str = "http://localhost:5000"
    environment: str = "development"
    redis_url: str | None = None
    route_policies_path: str = "config/route-policies.json"
    alert_webhook_url: str | None = None
    alert_threshold: int = DEFAULT_ALERT_THRESHOLD
    alert_window_ms: int = DEFAULT_ALERT_WINDOW_MS
    trust_proxy: bool = False
    log_level: str = "INFO"

    @property
    def production(self) -> bool:
        return self.environment == "production"

    @property
    def bypass_rate_limits(self) -> bool:
        """Limits are enforced only in production."""
        return not self.production

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> GuardSettings:
        if env is None:
            env = os.environ
        return cls(
            upstream_url=env.get("UPSTREAM_URL", cls.upstream_url),
            environment=env.get("APP_ENV", cls.environment).strip().lower(),
            redis_url=env.get("REDIS_URL") or None,
            route_policies_path=env.get("ROUTE_POLICIES_PATH", cls.route_policies_path),
            alert_webhook_url=env.get("ALERT_WEBHOOK_URL") or None,
            alert_threshold=int(env.get("ALERT_THRESHOLD", str(DEFAULT_ALERT_THRESHOLD))),
            alert_window_ms=int(env.get("ALERT_WINDOW_MS", str(DEFAULT_ALERT_WINDOW_MS))),
            trust_proxy=env.get("TRUST_PROXY", "").strip().lower() in _TRUE,
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )
