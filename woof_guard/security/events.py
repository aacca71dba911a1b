"""Security event emitter.

One helper per event type. Identity fields are masked here, at the moment
the event is created, so no unmasked user ID or email ever exists on a
``SecurityEvent``.
"""

from __future__ import annotations

from typing import Any

from woof_guard.models import SecurityEvent, SecurityEventType, Severity
from woof_guard.security.monitor import SecurityMonitor
from woof_guard.security.redaction import REDACTED, partially_redact


def mask_user_id(user_id: str | None) -> str:
    return partially_redact(user_id, 4) if user_id else "unknown"


def mask_email(email: str | None) -> str:
    return partially_redact(email, 3) if email else "unknown"


class SecurityEventLogger:
    """Builds ``SecurityEvent`` records and hands them to the monitor."""

    def __init__(self, monitor: SecurityMonitor) -> None:
        self.monitor = monitor

    def _emit(
        self,
        event_type: SecurityEventType,
        message: str,
        severity: Severity,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
        include_email: bool = False,
        **details: Any,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            endpoint=endpoint,
            client_ip=ip,
            user_id=mask_user_id(user_id),
            email=mask_email(email) if include_email else None,
            severity=severity,
            message=message,
            details={k: v for k, v in details.items() if v is not None} or None,
        )
        self.monitor.notify(event)
        return event

    def auth_failure(
        self,
        reason: str,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityEvent:
        severity = Severity.ERROR if reason == "multiple_failed_attempts" else Severity.WARNING
        return self._emit(
            SecurityEventType.AUTH_FAILURE,
            f"Authentication failure: {reason}",
            severity,
            endpoint, ip, user_id, email,
            include_email=True,
            reason=reason,
            context=details,
        )

    def auth_success(
        self,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
        method: str | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.AUTH_SUCCESS,
            f"Authentication success for {mask_email(email)}",
            Severity.INFO,
            endpoint, ip, user_id, email,
            include_email=True,
            method=method,
        )

    def authz_failure(
        self,
        reason: str,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        attempted_action: str | None = None,
        target_resource: str | None = None,
    ) -> SecurityEvent:
        idor = reason == "idor_attempt" or "different_user" in reason
        if idor:
            return self._emit(
                SecurityEventType.AUTHZ_IDOR_ATTEMPT,
                f"Potential IDOR attempt detected for user {mask_user_id(user_id)} "
                f"on endpoint {endpoint}",
                Severity.ERROR,
                endpoint, ip, user_id,
                reason=reason,
                attempted_action=attempted_action,
                target_resource=target_resource,
            )
        return self._emit(
            SecurityEventType.AUTHZ_DENIED,
            f"Authorization denied: {reason}",
            Severity.WARNING,
            endpoint, ip, user_id,
            reason=reason,
            attempted_action=attempted_action,
            target_resource=target_resource,
        )

    def rate_limit_exceeded(
        self,
        endpoint: str,
        ip: str | None,
        limit: int,
        window_ms: int,
        current_count: int | None = None,
        user_id: str | None = None,
        path: str | None = None,
    ) -> SecurityEvent:
        # More than twice the limit within one window looks like scanning.
        flood = current_count is not None and current_count > limit * 2
        return self._emit(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded for endpoint {endpoint}",
            Severity.ERROR if flood else Severity.WARNING,
            endpoint, ip, user_id,
            limit=limit,
            window_ms=window_ms,
            current_count=current_count,
            path=path,
        )

    def csrf_violation(
        self,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.CSRF_VIOLATION,
            f"CSRF token validation failed on {endpoint}",
            Severity.ERROR,
            endpoint, ip, user_id,
            reason=reason,
        )

    def suspicious_pattern(
        self,
        pattern: str,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        payload: object = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.SUSPICIOUS_PATTERN,
            f"Suspicious pattern detected: {pattern}",
            Severity.ERROR,
            endpoint, ip, user_id,
            pattern=pattern,
            payload=REDACTED if payload else None,
            context=details,
        )

    def input_validation_failure(
        self,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        field: str | None = None,
        reason: str | None = None,
        attempted_value: object = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.INPUT_VALIDATION_FAILURE,
            f"Input validation failed on {endpoint}",
            Severity.WARNING,
            endpoint, ip, user_id,
            field=field,
            reason=reason,
            attempted_value=REDACTED if attempted_value else None,
        )

    def account_deletion(
        self,
        ip: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
        reason: str | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.ACCOUNT_DELETION,
            f"Account deletion scheduled for {mask_email(email)}",
            Severity.INFO,
            None, ip, user_id, email,
            include_email=True,
            reason=reason,
        )

    def password_reset_request(
        self,
        ip: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.PASSWORD_RESET_REQUEST,
            f"Password reset requested for {mask_email(email)}",
            Severity.INFO,
            None, ip, user_id, email,
            include_email=True,
        )

    def malicious_payload(
        self,
        payload_type: str,
        endpoint: str | None = None,
        ip: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityEvent:
        return self._emit(
            SecurityEventType.MALICIOUS_PAYLOAD_DETECTED,
            f"Malicious payload detected: {payload_type}",
            Severity.ERROR,
            endpoint, ip, user_id,
            payload_type=payload_type,
            context=details,
        )
