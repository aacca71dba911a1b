"""Tests for the rate limiter factory and request gate."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tests.conftest import FakeClock, make_policy
from woof_guard.models import RateLimitPolicy, SecurityEventType, Severity
from woof_guard.ratelimit.limiter import RateLimiter, RequestContext, create_limiter
from woof_guard.ratelimit.policies import DAY_MS, MINUTE_MS, InvalidPolicyError, load_policies
from woof_guard.ratelimit.store import InMemoryCounterStore
from woof_guard.security.monitor import SecurityMonitor

IP = "203.0.113.7"


class TestGate:
    def test_allows_until_limit_then_denies(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        limiter = create_limiter(make_policy(max_requests=3), store, clock=clock)
        ctx = RequestContext(client_key=IP)
        results = [limiter.check(ctx) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    def test_window_rolls_over(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        limiter = create_limiter(make_policy(max_requests=1, window_ms=1000), store, clock=clock)
        ctx = RequestContext(client_key=IP)
        assert limiter.check(ctx).allowed
        assert not limiter.check(ctx).allowed
        clock.advance(1000)
        assert limiter.check(ctx).allowed

    def test_clients_do_not_share_counters(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        limiter = create_limiter(make_policy(max_requests=1), store, clock=clock)
        assert limiter.check(RequestContext(client_key="10.0.0.1")).allowed
        assert limiter.check(RequestContext(client_key="10.0.0.2")).allowed

    def test_limiters_for_different_policies_are_isolated(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policies = load_policies(env={})
        login = create_limiter(policies["LOGIN"], store, clock=clock)
        signup = create_limiter(policies["SIGNUP"], store, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(6):
            login.check(ctx)
        assert not login.check(ctx).allowed
        assert signup.check(ctx).allowed

    def test_deletion_endpoint_allows_one_per_day(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policy = load_policies(env={})["DELETION_ENDPOINT"]
        limiter = create_limiter(policy, store, clock=clock)
        ctx = RequestContext(client_key=IP)

        assert limiter.check(ctx).allowed
        clock.advance(MINUTE_MS)
        denied = limiter.check(ctx)
        assert not denied.allowed
        assert denied.body()["message"] == "Account deletion already initiated, please wait 24 hours"
        assert denied.body()["code"] == "DELETION_ENDPOINT_RATE_LIMIT_EXCEEDED"

        clock.advance(DAY_MS - MINUTE_MS)
        assert limiter.check(ctx).allowed

    def test_login_window_reopens_after_fifteen_minutes(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policy = load_policies(env={})["LOGIN"]
        limiter = create_limiter(policy, store, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(5):
            result = limiter.check(ctx)
            limiter.complete(ctx, result, 401)
        assert not limiter.check(ctx).allowed

        clock.advance(15 * MINUTE_MS + 1)
        assert limiter.check(ctx).allowed


class TestBypass:
    def test_bypass_always_allows(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        limiter = create_limiter(make_policy(max_requests=1), store, bypass=True, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(10):
            result = limiter.check(ctx)
            assert result.allowed
            assert result.bypassed

    def test_bypass_leaves_store_untouched(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        limiter = create_limiter(make_policy(), store, bypass=True, clock=clock)
        limiter.check(RequestContext(client_key=IP))
        assert len(store) == 0

    def test_bypass_sends_no_headers(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        limiter = create_limiter(make_policy(), store, bypass=True, clock=clock)
        assert limiter.check(RequestContext(client_key=IP)).headers() == {}

    def test_bypass_never_reports(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        monitor = MagicMock(spec=SecurityMonitor)
        limiter = create_limiter(
            make_policy(max_requests=1), store, monitor=monitor, bypass=True, clock=clock,
        )
        for _ in range(3):
            limiter.check(RequestContext(client_key=IP))
        monitor.notify.assert_not_called()


class TestSkipSuccessful:
    def test_successful_requests_are_not_counted(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policy = make_policy(max_requests=2, skip_successful_requests=True)
        limiter = create_limiter(policy, store, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(5):
            result = limiter.check(ctx)
            assert result.allowed
            limiter.complete(ctx, result, 200)

    def test_failed_requests_are_counted(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policy = make_policy(max_requests=2, skip_successful_requests=True)
        limiter = create_limiter(policy, store, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(2):
            limiter.complete(ctx, limiter.check(ctx), 401)
        assert not limiter.check(ctx).allowed

    def test_policy_without_flag_counts_successes(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        limiter = create_limiter(make_policy(max_requests=2), store, clock=clock)
        ctx = RequestContext(client_key=IP)
        for _ in range(2):
            limiter.complete(ctx, limiter.check(ctx), 200)
        assert not limiter.check(ctx).allowed

    def test_denied_request_is_not_released(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        policy = make_policy(max_requests=1, skip_successful_requests=True)
        limiter = create_limiter(policy, store, clock=clock)
        ctx = RequestContext(client_key=IP)
        limiter.complete(ctx, limiter.check(ctx), 401)
        denied = limiter.check(ctx)
        limiter.complete(ctx, denied, 200)
        entry = store.get("TEST", IP)
        assert entry is not None
        assert entry.count == 2


class TestResultShape:
    def test_headers_on_allowed(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        limiter = create_limiter(make_policy(max_requests=3, window_ms=60_000), store, clock=clock)
        headers = limiter.check(RequestContext(client_key=IP)).headers()
        assert headers == {
            "RateLimit-Limit": "3",
            "RateLimit-Remaining": "2",
            "RateLimit-Reset": "60",
        }

    def test_headers_on_denied_include_retry_after(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        limiter = create_limiter(make_policy(max_requests=1, window_ms=60_000), store, clock=clock)
        ctx = RequestContext(client_key=IP)
        limiter.check(ctx)
        clock.advance(10_500)
        headers = limiter.check(ctx).headers()
        assert headers["RateLimit-Remaining"] == "0"
        assert headers["RateLimit-Reset"] == "50"
        assert headers["Retry-After"] == "50"

    def test_body_shape(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        limiter = create_limiter(make_policy(max_requests=1), store, clock=clock)
        ctx = RequestContext(client_key=IP)
        limiter.check(ctx)
        assert limiter.check(ctx).body() == {
            "success": False,
            "message": "Too many test requests",
            "code": "TEST_RATE_LIMIT_EXCEEDED",
        }


class TestDenialReporting:
    def test_denial_emits_rate_limit_event(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        monitor = MagicMock(spec=SecurityMonitor)
        limiter = create_limiter(
            make_policy(max_requests=1), store, monitor=monitor, clock=clock,
        )
        ctx = RequestContext(client_key=IP, path="/api/test")
        limiter.check(ctx)
        monitor.notify.assert_not_called()

        limiter.check(ctx)
        monitor.notify.assert_called_once()
        event = monitor.notify.call_args[0][0]
        assert event.event_type is SecurityEventType.RATE_LIMIT_EXCEEDED
        assert event.endpoint == "TEST"
        assert event.client_ip == IP
        assert event.details["limit"] == 1
        assert event.details["path"] == "/api/test"

    def test_flood_is_reported_as_error(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        monitor = MagicMock(spec=SecurityMonitor)
        limiter = create_limiter(
            make_policy(max_requests=1), store, monitor=monitor, clock=clock,
        )
        ctx = RequestContext(client_key=IP)
        for _ in range(3):
            limiter.check(ctx)
        severities = [c[0][0].severity for c in monitor.notify.call_args_list]
        assert severities == [Severity.WARNING, Severity.ERROR]

    def test_monitor_failure_does_not_break_denial(
        self, store: InMemoryCounterStore, clock: FakeClock,
    ) -> None:
        monitor = MagicMock(spec=SecurityMonitor)
        monitor.notify.side_effect = RuntimeError("monitor down")
        limiter = create_limiter(
            make_policy(max_requests=1), store, monitor=monitor, clock=clock,
        )
        ctx = RequestContext(client_key=IP)
        limiter.check(ctx)
        result = limiter.check(ctx)
        assert result.allowed is False

    def test_denials_reach_real_monitor(
        self,
        store: InMemoryCounterStore,
        clock: FakeClock,
        monitor: SecurityMonitor,
        mock_sink: MagicMock,
    ) -> None:
        limiter = create_limiter(
            make_policy(max_requests=1), store, monitor=monitor, clock=clock,
        )
        ctx = RequestContext(client_key=IP)
        limiter.check(ctx)
        for _ in range(10):
            limiter.check(ctx)
        assert monitor.hits("TEST") == 10
        mock_sink.capture_message.assert_called_once()


class TestCreateLimiter:
    def test_returns_rate_limiter(self, store: InMemoryCounterStore) -> None:
        assert isinstance(create_limiter(make_policy(), store), RateLimiter)

    def test_rejects_non_policy(self, store: InMemoryCounterStore) -> None:
        with pytest.raises(InvalidPolicyError):
            create_limiter({"name": "TEST"}, store)  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_requests": 0},
            {"window_ms": -5},
            {"user_message": ""},
            {"error_code": "bad code"},
        ],
    )
    def test_rejects_invalid_policy(
        self, store: InMemoryCounterStore, overrides: dict[str, object],
    ) -> None:
        fields: dict[str, object] = {
            "name": "TEST",
            "max_requests": 3,
            "window_ms": 60_000,
            "user_message": "Too many test requests",
            "error_code": "TEST_RATE_LIMIT_EXCEEDED",
            "skip_successful_requests": False,
        }
        fields.update(overrides)
        policy = RateLimitPolicy.model_construct(**fields)  # type: ignore[arg-type]
        with pytest.raises(InvalidPolicyError):
            create_limiter(policy, store)
