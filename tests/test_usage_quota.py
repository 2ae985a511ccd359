"""
REPT - Usage Quota Tests
========================
Daily caps, sliding-window rate limits, stores and fail policy.
"""

import pytest
import threading
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

# Import modules to test
import sys
sys.path.insert(0, './backend')

from models import QuotaState, Tier, UsageReason
from usage_quota import (
    InMemoryUsageStore,
    SlidingWindowRateLimiter,
    TIER_POLICIES,
    UsageQuotaEnforcer,
    UsageStoreError,
    caller_key,
    check_tier_access,
    enforcement_message,
    get_tier_policy,
    next_reset_time,
    resolve_tier,
    upgrade_recommendations,
    usage_warning,
)


LISBON = ZoneInfo("Europe/Lisbon")


class FakeClock:
    """Controllable clock returning aware datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class BrokenStore(InMemoryUsageStore):
    """Store whose backend is down."""

    def get(self, key, today):
        raise UsageStoreError("connection refused")

    def increment_if_allowed(self, key, cap, today):
        raise UsageStoreError("connection refused")


@pytest.fixture
def clock():
    # 11:00 in Lisbon (summer time)
    return FakeClock(datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def enforcer(clock):
    return UsageQuotaEnforcer(tz=LISBON, clock=clock)


# =============================================================================
# POLICY AND KEYS
# =============================================================================

class TestTierPolicy:
    """Test the tier limits table."""

    def test_daily_limits(self):
        assert TIER_POLICIES[Tier.ANONYMOUS].daily_limit == 5
        assert TIER_POLICIES[Tier.FREE].daily_limit == 5
        assert TIER_POLICIES[Tier.REGISTERED].daily_limit == 10
        assert TIER_POLICIES[Tier.PRO].daily_limit is None

    def test_rate_limits(self):
        assert (TIER_POLICIES[Tier.FREE].per_minute, TIER_POLICIES[Tier.FREE].per_hour) == (3, 10)
        assert (TIER_POLICIES[Tier.REGISTERED].per_minute, TIER_POLICIES[Tier.REGISTERED].per_hour) == (5, 20)
        assert (TIER_POLICIES[Tier.PRO].per_minute, TIER_POLICIES[Tier.PRO].per_hour) == (10, 100)

    def test_unknown_tier_gets_anonymous_limits(self):
        assert get_tier_policy("enterprise") == TIER_POLICIES[Tier.ANONYMOUS]

    def test_resolve_tier(self):
        assert resolve_tier("Registered ") == Tier.REGISTERED
        assert resolve_tier(Tier.PRO) == Tier.PRO
        assert resolve_tier("enterprise") == Tier.ANONYMOUS
        assert resolve_tier(None) == Tier.ANONYMOUS


class TestCallerKey:
    """Test caller key derivation."""

    def test_user_wins(self):
        assert caller_key("u1", "s1", "1.2.3.4") == "user:u1"

    def test_anonymous_composite(self):
        assert caller_key(None, "s1", "1.2.3.4") == "anon:1.2.3.4:s1"

    def test_session_only(self):
        assert caller_key(session_id="s1") == "session:s1"

    def test_ip_only(self):
        assert caller_key(ip_address="1.2.3.4") == "ip:1.2.3.4"

    def test_nothing_supplied(self):
        with pytest.raises(ValueError):
            caller_key(None, "  ", "")


class TestResetTime:
    """Test the local-midnight reset boundary."""

    def test_next_local_midnight(self):
        reset = next_reset_time(datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc), LISBON)
        assert reset == datetime(2025, 6, 2, 0, 0, tzinfo=LISBON)

    def test_uses_local_date_not_utc(self):
        """23:30 UTC in summer is already the next day in Lisbon."""
        reset = next_reset_time(datetime(2025, 6, 1, 23, 30, tzinfo=timezone.utc), LISBON)
        assert reset == datetime(2025, 6, 3, 0, 0, tzinfo=LISBON)


# =============================================================================
# STORE AND RATE LIMITER
# =============================================================================

class TestInMemoryUsageStore:
    """Test the in-memory counter store."""

    def test_increment_until_cap(self):
        store = InMemoryUsageStore()
        today = date(2025, 6, 1)
        results = [store.increment_if_allowed("k", 2, today) for _ in range(3)]
        assert results == [(True, 1), (True, 2), (False, 2)]

    def test_unbounded_cap(self):
        store = InMemoryUsageStore()
        for _ in range(50):
            store.increment_if_allowed("k", None, date(2025, 6, 1))
        assert store.get("k", date(2025, 6, 1)).count == 50

    def test_lazy_reset_on_new_day(self):
        """A counter from yesterday reads as zero today."""
        store = InMemoryUsageStore()
        store.increment_if_allowed("k", 5, date(2025, 6, 1))
        counter = store.get("k", date(2025, 6, 2))
        assert counter.count == 0
        assert counter.last_reset == "2025-06-02"

    def test_sweep_is_idempotent(self):
        store = InMemoryUsageStore()
        store.increment_if_allowed("a", 5, date(2025, 6, 1))
        store.increment_if_allowed("b", 5, date(2025, 6, 2))
        assert store.reset_stale(date(2025, 6, 2)) == 1
        assert store.reset_stale(date(2025, 6, 2)) == 0
        assert store.get("b", date(2025, 6, 2)).count == 1

    def test_concurrent_increments_are_atomic(self):
        """Concurrent callers never exceed the cap or lose increments."""
        store = InMemoryUsageStore()
        today = date(2025, 6, 1)
        barrier = threading.Barrier(20)
        granted = []

        def worker():
            barrier.wait()
            allowed, _ = store.increment_if_allowed("k", 5, today)
            granted.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert granted.count(True) == 5
        assert store.get("k", today).count == 5


class TestSlidingWindowRateLimiter:
    """Test the per-minute and per-hour windows."""

    def test_minute_window(self):
        limiter = SlidingWindowRateLimiter()
        policy = TIER_POLICIES[Tier.FREE]
        assert [limiter.check("k", policy, 1000.0)[0] for _ in range(3)] == [True, True, True]
        allowed, retry_after = limiter.check("k", policy, 1010.0)
        assert not allowed
        assert retry_after == 50
        assert limiter.check("k", policy, 1060.0)[0] is True

    def test_hour_window(self):
        limiter = SlidingWindowRateLimiter()
        policy = TIER_POLICIES[Tier.FREE]
        for i in range(10):
            assert limiter.check("k", policy, 1000.0 + i * 30)[0]
        allowed, retry_after = limiter.check("k", policy, 1300.0)
        assert not allowed
        assert retry_after == 3300

    def test_status_does_not_record(self):
        limiter = SlidingWindowRateLimiter()
        policy = TIER_POLICIES[Tier.FREE]
        for _ in range(5):
            assert limiter.status("k", policy, 1000.0) == (True, None)
        assert limiter.check("k", policy, 1000.0)[0]

    def test_idle_keys_discarded(self):
        limiter = SlidingWindowRateLimiter()
        policy = TIER_POLICIES[Tier.FREE]
        limiter.check("old", policy, 1000.0)
        limiter.check("new", policy, 5000.0)
        assert limiter.discard_idle(5000.0) == 1


# =============================================================================
# ENFORCER
# =============================================================================

class TestUsageQuotaEnforcer:
    """Test the check-and-consume state machine."""

    def test_quota_cycle(self, enforcer, clock):
        """Free caller: 5 allowed, 6th denied, allowed again after midnight."""
        key = caller_key("u1")
        for expected_remaining in (4, 3, 2, 1, 0):
            decision = enforcer.check_and_consume(key, Tier.FREE)
            assert decision.allowed
            assert decision.remaining == expected_remaining
            clock.advance(minutes=10)

        assert decision.state == QuotaState.AT_LIMIT

        denied = enforcer.check_and_consume(key, Tier.FREE)
        assert not denied.allowed
        assert denied.reason == UsageReason.DAILY_LIMIT
        assert denied.state == QuotaState.AT_LIMIT
        assert denied.reset_time == datetime(2025, 6, 2, 0, 0, tzinfo=LISBON)

        clock.now = denied.reset_time + timedelta(minutes=1)
        renewed = enforcer.check_and_consume(key, Tier.FREE)
        assert renewed.allowed
        assert renewed.remaining == 4
        assert renewed.state == QuotaState.WITHIN_LIMIT

    def test_denied_attempt_does_not_consume(self, enforcer, clock):
        key = caller_key("u1")
        for _ in range(7):
            enforcer.check_and_consume(key, Tier.FREE)
            clock.advance(minutes=7)
        assert enforcer.store.get(key, enforcer.today()).count == 5

    def test_rate_limit_takes_precedence(self, enforcer, clock):
        key = caller_key("u2")
        for _ in range(3):
            assert enforcer.check_and_consume(key, Tier.FREE).allowed

        decision = enforcer.check_and_consume(key, Tier.FREE)
        assert not decision.allowed
        assert decision.reason == UsageReason.RATE_LIMIT
        assert decision.state == QuotaState.RATE_LIMITED
        assert decision.retry_after_seconds == 60
        assert decision.remaining == 2
        assert enforcer.store.get(key, enforcer.today()).count == 3

        clock.advance(seconds=61)
        assert enforcer.check_and_consume(key, Tier.FREE).allowed

    def test_hourly_limit_over_daily_denials(self, enforcer, clock):
        """Denied attempts still count towards the hourly window."""
        key = caller_key("u3")
        reasons = []
        for _ in range(10):
            reasons.append(enforcer.check_and_consume(key, Tier.FREE).reason)
            clock.advance(seconds=30)
        assert reasons[:5] == [UsageReason.NONE] * 5
        assert reasons[5:] == [UsageReason.DAILY_LIMIT] * 5

        decision = enforcer.check_and_consume(key, Tier.FREE)
        assert decision.reason == UsageReason.RATE_LIMIT
        assert decision.retry_after_seconds == 3300

    def test_pro_is_unbounded(self, enforcer, clock):
        key = caller_key("pro-user")
        for _ in range(50):
            decision = enforcer.check_and_consume(key, Tier.PRO)
            assert decision.allowed
            clock.advance(seconds=40)
        assert decision.remaining is None
        assert decision.daily_limit is None
        assert decision.used == 50

    def test_unknown_tier_string_treated_as_anonymous(self, enforcer, clock):
        """Unknown tiers fall back to anonymous limits instead of raising."""
        key = caller_key(session_id="s-unknown")
        assert enforcer.peek(key, "enterprise").tier == Tier.ANONYMOUS
        allowed = []
        for _ in range(6):
            decision = enforcer.check_and_consume(key, "enterprise")
            allowed.append(decision.allowed)
            clock.advance(minutes=10)
        assert allowed == [True] * 5 + [False]
        assert decision.tier == Tier.ANONYMOUS
        assert decision.daily_limit == 5

    def test_registered_limit(self, enforcer, clock):
        key = caller_key("reg")
        allowed = []
        for _ in range(11):
            allowed.append(enforcer.check_and_consume(key, "registered").allowed)
            clock.advance(minutes=4)
        assert allowed == [True] * 10 + [False]

    def test_callers_are_independent(self, enforcer, clock):
        for _ in range(3):
            enforcer.check_and_consume("user:a", Tier.FREE)
        assert enforcer.check_and_consume("user:b", Tier.FREE).allowed

    def test_peek_does_not_consume(self, enforcer, clock):
        key = caller_key(session_id="s1")
        enforcer.check_and_consume(key, Tier.ANONYMOUS)
        for _ in range(5):
            decision = enforcer.peek(key, Tier.ANONYMOUS)
        assert decision.allowed
        assert decision.used == 1
        assert decision.remaining == 4

    def test_peek_reports_limit(self, enforcer, clock):
        key = caller_key("u4")
        for _ in range(5):
            enforcer.check_and_consume(key, Tier.FREE)
            clock.advance(minutes=10)
        decision = enforcer.peek(key, Tier.FREE)
        assert not decision.allowed
        assert decision.reason == UsageReason.DAILY_LIMIT

    def test_reset_caller(self, enforcer, clock):
        key = caller_key("u5")
        for _ in range(3):
            enforcer.check_and_consume(key, Tier.FREE)
        enforcer.reset_caller(key)
        decision = enforcer.check_and_consume(key, Tier.FREE)
        assert decision.allowed
        assert decision.used == 1

    def test_daily_sweep(self, enforcer, clock):
        enforcer.check_and_consume("user:a", Tier.FREE)
        enforcer.check_and_consume("user:b", Tier.FREE)
        clock.advance(days=1)
        assert enforcer.daily_sweep() == 2
        assert enforcer.daily_sweep() == 0

    def test_fail_open(self, clock):
        enforcer = UsageQuotaEnforcer(store=BrokenStore(), tz=LISBON, clock=clock)
        decision = enforcer.check_and_consume("user:a", Tier.FREE)
        assert decision.allowed
        assert decision.degraded

    def test_fail_closed(self, clock):
        enforcer = UsageQuotaEnforcer(store=BrokenStore(), tz=LISBON, clock=clock, fail_open=False)
        decision = enforcer.check_and_consume("user:a", Tier.FREE)
        assert not decision.allowed
        assert decision.reason == UsageReason.DAILY_LIMIT
        assert decision.degraded

    def test_rate_limit_still_applies_when_store_down(self, clock):
        enforcer = UsageQuotaEnforcer(store=BrokenStore(), tz=LISBON, clock=clock)
        for _ in range(3):
            enforcer.check_and_consume("user:a", Tier.FREE)
        assert enforcer.check_and_consume("user:a", Tier.FREE).reason == UsageReason.RATE_LIMIT


# =============================================================================
# TIER ACCESS AND MESSAGES
# =============================================================================

class TestTierAccess:
    """Test calculator access by tier."""

    def test_free_calculators_open_to_anonymous(self):
        assert check_tier_access("sell-house", Tier.ANONYMOUS).has_access
        assert check_tier_access("buy-house", Tier.ANONYMOUS).has_access

    def test_registered_calculator(self):
        denied = check_tier_access("mortgage-simulator", Tier.ANONYMOUS)
        assert not denied.has_access
        assert denied.upgrade_url == "/auth/signup"
        assert denied.message == "Esta calculadora requer registo gratuito."
        assert check_tier_access("mortgage-simulator", Tier.REGISTERED).has_access

    def test_pro_calculators(self):
        for kind in ("rental-investment", "property-flip", "switch-house"):
            denied = check_tier_access(kind, Tier.REGISTERED)
            assert not denied.has_access
            assert denied.upgrade_url == "/pricing"
            assert check_tier_access(kind, Tier.PRO).has_access


class TestUsageMessages:
    """Test warnings and user-facing messages."""

    def test_approaching_limit(self, enforcer, clock):
        for _ in range(4):
            decision = enforcer.check_and_consume("user:a", Tier.FREE)
            clock.advance(minutes=10)
        warning = usage_warning(decision)
        assert warning.should_warn
        assert warning.warning_type == "approaching_limit"
        assert "Restam apenas 1" in warning.message

    def test_anonymous_register_nudge(self, enforcer, clock):
        for _ in range(3):
            decision = enforcer.check_and_consume("ip:1.2.3.4", Tier.ANONYMOUS)
            clock.advance(minutes=10)
        warning = usage_warning(decision)
        assert warning.warning_type == "upgrade_suggested"

    def test_no_warning_for_pro(self, enforcer):
        assert not usage_warning(enforcer.check_and_consume("user:p", Tier.PRO)).should_warn

    def test_enforcement_messages(self, enforcer, clock):
        for _ in range(3):
            decision = enforcer.check_and_consume("user:a", Tier.FREE)
        assert enforcement_message(decision) == "Restam 2 cálculos hoje."
        limited = enforcer.check_and_consume("user:a", Tier.FREE)
        assert enforcement_message(limited) == "Muitas tentativas. Aguarde alguns minutos."


class TestUpgradeRecommendations:
    """Test tier upgrade suggestions from usage patterns."""

    def test_pro_never_recommended(self, enforcer):
        decision = enforcer.check_and_consume("user:p", Tier.PRO)
        recommendation = upgrade_recommendations(decision, 40, 200)
        assert recommendation.should_recommend_upgrade is False
        assert recommendation.recommended_tier == Tier.PRO
        assert recommendation.reasons == []
        assert recommendation.benefits == []

    def test_light_anonymous_use(self, enforcer):
        decision = enforcer.check_and_consume("ip:1.2.3.4", Tier.ANONYMOUS)
        recommendation = upgrade_recommendations(decision, 1, 1)
        assert recommendation.should_recommend_upgrade is False
        assert recommendation.recommended_tier == Tier.REGISTERED
        assert "Duplicar limite diário (10 vs 5 cálculos)" in recommendation.benefits

    def test_active_anonymous_user(self, enforcer, clock):
        for _ in range(3):
            decision = enforcer.check_and_consume("ip:1.2.3.4", Tier.ANONYMOUS)
            clock.advance(minutes=10)
        recommendation = upgrade_recommendations(decision, 3, 3)
        assert recommendation.should_recommend_upgrade is True
        assert recommendation.recommended_tier == Tier.REGISTERED
        assert recommendation.reasons == ["Utilizador ativo"]

    def test_anonymous_at_limit(self, enforcer, clock):
        for _ in range(5):
            decision = enforcer.check_and_consume("ip:1.2.3.4", Tier.ANONYMOUS)
            clock.advance(minutes=10)
        recommendation = upgrade_recommendations(decision, 5, 5)
        assert recommendation.reasons == ["Atingiu o limite diário"]
        assert recommendation.recommended_tier == Tier.REGISTERED

    def test_heavy_weekly_use_points_to_pro(self, enforcer):
        decision = enforcer.check_and_consume("ip:1.2.3.4", Tier.ANONYMOUS)
        recommendation = upgrade_recommendations(decision, 1, 26)
        assert recommendation.should_recommend_upgrade is True
        assert recommendation.recommended_tier == Tier.PRO
        assert recommendation.reasons == ["Utilização consistentemente alta"]

    def test_free_and_registered_point_to_pro(self, enforcer, clock):
        for tier in (Tier.FREE, Tier.REGISTERED):
            decision = enforcer.check_and_consume(f"user:{tier.value}", tier)
            recommendation = upgrade_recommendations(decision, 1, 1)
            assert recommendation.should_recommend_upgrade is False
            assert recommendation.recommended_tier == Tier.PRO
            assert "Cálculos ilimitados" in recommendation.benefits
            assert len(recommendation.benefits) == 5

    def test_registered_at_limit(self, enforcer, clock):
        for _ in range(10):
            decision = enforcer.check_and_consume("user:r", Tier.REGISTERED)
            clock.advance(minutes=4)
        recommendation = upgrade_recommendations(decision, 10, 10)
        assert recommendation.should_recommend_upgrade is True
        assert recommendation.recommended_tier == Tier.PRO
        assert recommendation.reasons == ["Atingiu o limite diário"]
