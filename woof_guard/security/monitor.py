"""Security monitor: per-endpoint event density tracking and alerting.

State lives for the process lifetime only. Every recorded event is logged
(sanitized); tracked events also count toward their endpoint's alert window,
and each event that lands at or above the threshold fires one alert.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from woof_guard.clock import Clock, now_ms
from woof_guard.models import AlertState, SecurityEvent, SecurityEventType, Severity
from woof_guard.security.alerts import Alert, AlertDispatcher, LoggingAlertSink
from woof_guard.security.redaction import sanitize_object

logger = logging.getLogger("woof_guard.security")

DEFAULT_ALERT_THRESHOLD = 10
DEFAULT_ALERT_WINDOW_MS = 5 * 60 * 1000

INFORMATIONAL_TYPES = frozenset({
    SecurityEventType.AUTH_SUCCESS,
    SecurityEventType.ACCOUNT_DELETION,
    SecurityEventType.PASSWORD_RESET_REQUEST,
})

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class _Hit:
    timestamp: int
    client_ip: str | None
    event_type: SecurityEventType


class SecurityMonitor:
    """Aggregates security events and escalates on dense bursts."""

    def __init__(
        self,
        alert_threshold: int = DEFAULT_ALERT_THRESHOLD,
        window_ms: int = DEFAULT_ALERT_WINDOW_MS,
        dispatcher: AlertDispatcher | None = None,
        clock: Clock | None = None,
        tracked_types: Iterable[SecurityEventType] | None = None,
    ) -> None:
        if alert_threshold < 1:
            raise ValueError(f"alert_threshold must be >= 1, got {alert_threshold}")
        if window_ms < 1:
            raise ValueError(f"window_ms must be >= 1, got {window_ms}")
        self.alert_threshold = alert_threshold
        self.window_ms = window_ms
        self.dispatcher = dispatcher or AlertDispatcher(LoggingAlertSink())
        self._clock = clock or now_ms
        if tracked_types is None:
            tracked_types = set(SecurityEventType) - INFORMATIONAL_TYPES
        self._tracked = frozenset(tracked_types)
        self._windows: dict[str, list[_Hit]] = {}
        self._lock = threading.Lock()

    def record_event(self, event: SecurityEvent) -> bool:
        """Log an event and fold it into its endpoint's window.

        Returns True when the event triggered an alert.
        """
        self._log_event(event)
        if event.event_type not in self._tracked:
            return False

        endpoint = event.endpoint or "unknown"
        with self._lock:
            now = self._clock()
            hits = self._prune(endpoint, now)
            hits.append(_Hit(now, event.client_ip, event.event_type))
            self._windows[endpoint] = hits
            if len(hits) < self.alert_threshold:
                return False
            snapshot = list(hits)
        self._alert(endpoint, event, snapshot)
        return True

    def notify(self, event: SecurityEvent) -> bool:
        """Like ``record_event`` but never raises; for use on request paths."""
        try:
            return self.record_event(event)
        except Exception as exc:  # monitoring must not fail the request
            logger.warning("Security monitor failed to record event: %s", exc)
            return False

    def hits(self, endpoint: str) -> int:
        with self._lock:
            return len(self._prune(endpoint, self._clock()))

    def should_alert(self, endpoint: str) -> bool:
        return self.hits(endpoint) >= self.alert_threshold

    def state(self, endpoint: str) -> AlertState:
        return AlertState.ALERTING if self.should_alert(endpoint) else AlertState.NORMAL

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Per-endpoint summary. Client IPs are counted, never listed."""
        summary: dict[str, dict[str, object]] = {}
        with self._lock:
            now = self._clock()
            for endpoint in list(self._windows):
                hits = self._prune(endpoint, now)
                if not hits:
                    continue
                state = (
                    AlertState.ALERTING if len(hits) >= self.alert_threshold
                    else AlertState.NORMAL
                )
                summary[endpoint] = {
                    "hits": len(hits),
                    "state": state.value,
                    "distinct_ips": len({h.client_ip for h in hits if h.client_ip}),
                }
        return summary

    def tracked_endpoints(self) -> list[str]:
        with self._lock:
            return list(self._windows)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _prune(self, endpoint: str, now: int) -> list[_Hit]:
        # Caller holds self._lock. Endpoints with no live hits are forgotten.
        hits = [h for h in self._windows.get(endpoint, []) if now - h.timestamp < self.window_ms]
        if hits:
            self._windows[endpoint] = hits
        else:
            self._windows.pop(endpoint, None)
        return hits

    def _log_event(self, event: SecurityEvent) -> None:
        # user_id and email are masked by SecurityEvent itself.
        data = event.model_dump(mode="json", exclude_none=True, exclude={"details"})
        if event.details:
            data["details"] = sanitize_object(event.details)
        logger.log(
            _LOG_LEVELS[event.severity],
            event.message or f"Security event {event.event_type.value}",
            extra={"data": data},
        )

    def _alert(self, endpoint: str, event: SecurityEvent, hits: list[_Hit]) -> None:
        details = event.details or {}
        context: dict[str, object] = {
            "endpoint": endpoint,
            "type": event.event_type.value,
            "hits_in_window": len(hits),
            "window_ms": self.window_ms,
        }
        if event.event_type is SecurityEventType.RATE_LIMIT_EXCEEDED:
            limit = details.get("limit")
            window = details.get("window_ms")
            context.update({"ip": event.client_ip, "limit": limit, "rate_window_ms": window})
            text = (
                f"Rate limit exceeded: {endpoint} "
                f"(IP: {event.client_ip}, limit: {limit}/{window}ms)"
            )
        else:
            text = (
                f"Security alert: {len(hits)} {event.event_type.value} events "
                f"on {endpoint} within {self.window_ms // 1000}s"
            )

        self.dispatcher.dispatch(Alert(text=text, level="warning", context=context))

        logger.error(
            "ALERT: Possible attack on %s",
            endpoint,
            extra={"data": {
                "endpoint": endpoint,
                "hits_in_window": len(hits),
                "ips": sorted({h.client_ip for h in hits if h.client_ip}),
            }},
        )
