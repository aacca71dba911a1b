"""Shared Pydantic data models for woof-guard."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from woof_guard.security.redaction import REDACTED, partially_redact

# --- Enums ---


class SecurityEventType(str, Enum):
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTHZ_DENIED = "AUTHZ_DENIED"
    AUTHZ_IDOR_ATTEMPT = "AUTHZ_IDOR_ATTEMPT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_VIOLATION = "CSRF_VIOLATION"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
    INPUT_VALIDATION_FAILURE = "INPUT_VALIDATION_FAILURE"
    ACCOUNT_DELETION = "ACCOUNT_DELETION"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    MALICIOUS_PAYLOAD_DETECTED = "MALICIOUS_PAYLOAD_DETECTED"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AlertState(str, Enum):
    NORMAL = "normal"
    ALERTING = "alerting"


# --- Rate Limit Models ---


class RateLimitPolicy(BaseModel):
    """Static per-endpoint rate limit configuration."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, pattern=r"^[A-Z_]+$")
    max_requests: int = Field(ge=1)
    window_ms: int = Field(ge=1)
    user_message: str = Field(min_length=1)
    error_code: str = Field(pattern=r"^[A-Z_]+$")
    skip_successful_requests: bool = False

    @property
    def window_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)


class RouteRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str = "*"
    path: str  # regex, matched against the full request path
    policy: str


@dataclass(frozen=True)
class CounterDecision:
    """Outcome of a single counter-store read-modify-write."""

    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: int  # epoch ms


# --- Security Event Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _is_masked(value: str) -> bool:
    return value in ("unknown", REDACTED) or value.endswith("****")


class SecurityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: SecurityEventType
    timestamp: str = Field(default_factory=_now_iso)
    endpoint: str | None = None
    client_ip: str | None = None
    user_id: str | None = None
    email: str | None = None
    severity: Severity = Severity.WARNING
    message: str = ""
    details: dict[str, object] | None = None

    # Identity fields are masked on the way in; a raw value never survives
    # construction.
    @field_validator("user_id")
    @classmethod
    def _mask_user_id(cls, v: str | None) -> str | None:
        if v is None or _is_masked(v):
            return v
        return partially_redact(v, 4)

    @field_validator("email")
    @classmethod
    def _mask_email(cls, v: str | None) -> str | None:
        if v is None or _is_masked(v):
            return v
        return partially_redact(v, 3)
