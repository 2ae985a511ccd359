"""
REPT - Usage Quota Enforcer
===========================
Tiered daily calculation caps plus a short-window rate limit.

Per caller key the state cycles daily:
    within-limit -> at-limit        (daily count reaches the tier cap)
    at-limit -> within-limit        (next local midnight passes)
    * -> rate-limited               (per-minute / per-hour window full)

The rate limit is checked first and takes precedence. The daily counter
lives behind the abstract UsageStore so check-and-increment is atomic
against whatever backs it. A counter whose last reset is not today reads
as zero (lazy reset); the daily sweep only tidies stored rows.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Deque, Dict, Optional, Tuple, Union

from zoneinfo import ZoneInfo

from market_constants import CALCULATOR_CATALOGUE, CalculatorInfo, CalculatorType
from models import (
    QuotaState,
    Tier,
    TierAccess,
    UsageCounter,
    UsageDecision,
    UpgradeRecommendation,
    UsageReason,
    UsageWarning,
)

logger = logging.getLogger(__name__)


DEFAULT_TIMEZONE = "Europe/Lisbon"


# =============================================================================
# TIER POLICY
# =============================================================================

@dataclass(frozen=True)
class TierPolicy:
    """Limits for a user tier."""
    daily_limit: Optional[int]  # None = unlimited
    per_minute: int
    per_hour: int


TIER_POLICIES: Dict[Tier, TierPolicy] = {
    Tier.ANONYMOUS: TierPolicy(daily_limit=5, per_minute=3, per_hour=10),
    Tier.FREE: TierPolicy(daily_limit=5, per_minute=3, per_hour=10),
    Tier.REGISTERED: TierPolicy(daily_limit=10, per_minute=5, per_hour=20),
    Tier.PRO: TierPolicy(daily_limit=None, per_minute=10, per_hour=100),
}


def resolve_tier(tier: Union[Tier, str, None]) -> Tier:
    """Coerce a tier name. Unknown or missing tiers are anonymous."""
    if isinstance(tier, str) and not isinstance(tier, Tier):
        tier = tier.strip().lower()
    try:
        return Tier(tier)
    except ValueError:
        return Tier.ANONYMOUS


def get_tier_policy(tier: Union[Tier, str], policies: Dict[Tier, TierPolicy] = TIER_POLICIES) -> TierPolicy:
    """Get limits for a given tier. Unknown tiers get the anonymous limits."""
    return policies.get(resolve_tier(tier), policies[Tier.ANONYMOUS])


def caller_key(
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None
) -> str:
    """
    Stable key identifying who is calling.

    Authenticated users are keyed by id; anonymous callers by session
    and/or IP.
    """
    user_id = (user_id or "").strip()
    session_id = (session_id or "").strip()
    ip_address = (ip_address or "").strip()

    if user_id:
        return f"user:{user_id}"
    if session_id and ip_address:
        return f"anon:{ip_address}:{session_id}"
    if session_id:
        return f"session:{session_id}"
    if ip_address:
        return f"ip:{ip_address}"
    raise ValueError("A user id, session id or IP address is required")


def next_reset_time(now: datetime, tz: tzinfo) -> datetime:
    """Next local midnight in the reference zone."""
    local_today = now.astimezone(tz).date()
    return datetime.combine(local_today + timedelta(days=1), time.min, tzinfo=tz)


# =============================================================================
# USAGE STORE
# =============================================================================

class UsageStoreError(Exception):
    """The backing store for usage counters is unavailable."""


class UsageStore(ABC):
    """
    Persistence for daily usage counters.

    Implementations must make increment_if_allowed a single atomic
    operation per key. Any backend failure is raised as UsageStoreError.
    """

    @abstractmethod
    def get(self, key: str, today: date) -> UsageCounter:
        """Current counter; a counter last reset before today reads as zero."""

    @abstractmethod
    def increment_if_allowed(self, key: str, cap: Optional[int], today: date) -> Tuple[bool, int]:
        """
        Increment unless the cap is reached.

        Returns:
            (incremented, count after the operation)
        """

    @abstractmethod
    def reset(self, key: str, today: date) -> None:
        """Zero one caller's counter."""

    @abstractmethod
    def reset_stale(self, today: date) -> int:
        """Zero every counter not reset today. Idempotent. Returns how many were reset."""


class InMemoryUsageStore(UsageStore):
    """Process-local store. Suitable for a single worker and for tests."""

    def __init__(self):
        self._counters: Dict[str, UsageCounter] = {}
        self._lock = threading.Lock()

    def _current(self, key: str, today: date) -> UsageCounter:
        counter = self._counters.get(key)
        if counter is None or counter.last_reset != today.isoformat():
            return UsageCounter(count=0, last_reset=today.isoformat())
        return counter

    def get(self, key: str, today: date) -> UsageCounter:
        with self._lock:
            return self._current(key, today).model_copy()

    def increment_if_allowed(self, key: str, cap: Optional[int], today: date) -> Tuple[bool, int]:
        with self._lock:
            counter = self._current(key, today)
            if cap is not None and counter.count >= cap:
                return False, counter.count
            updated = UsageCounter(count=counter.count + 1, last_reset=today.isoformat())
            self._counters[key] = updated
            return True, updated.count

    def reset(self, key: str, today: date) -> None:
        with self._lock:
            self._counters[key] = UsageCounter(count=0, last_reset=today.isoformat())

    def reset_stale(self, today: date) -> int:
        stamp = today.isoformat()
        with self._lock:
            stale = [key for key, counter in self._counters.items() if counter.last_reset != stamp]
            for key in stale:
                self._counters[key] = UsageCounter(count=0, last_reset=stamp)
        return len(stale)


# =============================================================================
# RATE LIMITER
# =============================================================================

class SlidingWindowRateLimiter:
    """
    Per-key sliding windows of request timestamps (last minute, last hour).

    Timestamps are epoch seconds supplied by the caller.
    """

    MINUTE = 60
    HOUR = 3600

    def __init__(self):
        self._windows: Dict[str, Tuple[Deque[float], Deque[float]]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Tuple[Deque[float], Deque[float]]:
        minute, hour = self._windows.setdefault(key, (deque(), deque()))
        while minute and minute[0] <= now - self.MINUTE:
            minute.popleft()
        while hour and hour[0] <= now - self.HOUR:
            hour.popleft()
        return minute, hour

    def _retry_after(self, key: str, policy: TierPolicy, now: float) -> Optional[int]:
        minute, hour = self._prune(key, now)
        waits = []
        if len(minute) >= policy.per_minute:
            waits.append(minute[0] + self.MINUTE - now)
        if len(hour) >= policy.per_hour:
            waits.append(hour[0] + self.HOUR - now)
        if not waits:
            return None
        return max(1, int(math.ceil(max(waits))))

    def check(self, key: str, policy: TierPolicy, now: float) -> Tuple[bool, Optional[int]]:
        """
        Check and record a request.

        Returns:
            (allowed, retry_after_seconds); the request is recorded only when allowed
        """
        with self._lock:
            retry_after = self._retry_after(key, policy, now)
            if retry_after is not None:
                return False, retry_after
            minute, hour = self._windows[key]
            minute.append(now)
            hour.append(now)
            return True, None

    def status(self, key: str, policy: TierPolicy, now: float) -> Tuple[bool, Optional[int]]:
        """Same as check() without recording anything."""
        with self._lock:
            retry_after = self._retry_after(key, policy, now)
            if not any(self._windows[key]):
                del self._windows[key]
            return retry_after is None, retry_after

    def discard_idle(self, now: float) -> int:
        """Drop keys with no request in the last hour."""
        with self._lock:
            idle = [key for key in list(self._windows) if not any(self._prune(key, now))]
            for key in idle:
                del self._windows[key]
        return len(idle)

    def clear(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


# =============================================================================
# ENFORCER
# =============================================================================

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageQuotaEnforcer:
    """
    Decides whether a caller may run one more calculation.

    Store failures never propagate out of check_and_consume/peek: the
    fail policy decides (fail_open=True allows, False denies) and the
    decision is marked degraded.
    """

    def __init__(
        self,
        store: Optional[UsageStore] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        policies: Dict[Tier, TierPolicy] = TIER_POLICIES,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = _utc_now,
        fail_open: bool = True
    ):
        self.store = store if store is not None else InMemoryUsageStore()
        self.rate_limiter = rate_limiter if rate_limiter is not None else SlidingWindowRateLimiter()
        self.policies = policies
        self.tz = tz or ZoneInfo(DEFAULT_TIMEZONE)
        self.clock = clock
        self.fail_open = fail_open

    def today(self, now: Optional[datetime] = None) -> date:
        return (now or self.clock()).astimezone(self.tz).date()

    def check_and_consume(self, key: str, tier: Union[Tier, str]) -> UsageDecision:
        """
        Check the rate limit, then atomically consume one daily unit.

        The daily counter is incremented only when the decision is allowed.
        """
        tier = resolve_tier(tier)
        policy = get_tier_policy(tier, self.policies)
        now = self.clock()
        today = self.today(now)
        reset_time = next_reset_time(now, self.tz)

        rate_ok, retry_after = self.rate_limiter.check(key, policy, now.timestamp())
        if not rate_ok:
            logger.info("Rate limit exceeded for %s (%s), retry in %ss", key, tier.value, retry_after)
            try:
                used = self.store.get(key, today).count
            except UsageStoreError as e:
                logger.error("Usage store unavailable reading %s: %s", key, e)
                used = 0
            return self._rate_limited(tier, policy, used, reset_time, retry_after)

        try:
            consumed, used = self.store.increment_if_allowed(key, policy.daily_limit, today)
        except UsageStoreError as e:
            logger.error("Usage store unavailable for %s, failing %s: %s",
                         key, "open" if self.fail_open else "closed", e)
            return self._degraded(tier, policy, reset_time)

        if not consumed:
            logger.info("Daily limit reached for %s (%s: %s/%s)", key, tier.value, used, policy.daily_limit)
            return UsageDecision(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                reason=UsageReason.DAILY_LIMIT,
                state=QuotaState.AT_LIMIT,
                tier=tier,
                daily_limit=policy.daily_limit,
                used=used,
            )

        return self._within(tier, policy, used, reset_time, allowed=True)

    def peek(self, key: str, tier: Union[Tier, str]) -> UsageDecision:
        """Read-only status: what check_and_consume would decide right now."""
        tier = resolve_tier(tier)
        policy = get_tier_policy(tier, self.policies)
        now = self.clock()
        reset_time = next_reset_time(now, self.tz)

        rate_ok, retry_after = self.rate_limiter.status(key, policy, now.timestamp())
        try:
            used = self.store.get(key, self.today(now)).count
        except UsageStoreError as e:
            logger.error("Usage store unavailable reading %s: %s", key, e)
            return self._degraded(tier, policy, reset_time)

        if not rate_ok:
            return self._rate_limited(tier, policy, used, reset_time, retry_after)

        if policy.daily_limit is not None and used >= policy.daily_limit:
            return UsageDecision(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                reason=UsageReason.DAILY_LIMIT,
                state=QuotaState.AT_LIMIT,
                tier=tier,
                daily_limit=policy.daily_limit,
                used=used,
            )

        return self._within(tier, policy, used, reset_time, allowed=True)

    def daily_sweep(self) -> int:
        """
        Zero every counter not reset today and drop idle rate windows.

        Safe to run any number of times a day. Store errors propagate.
        """
        now = self.clock()
        reset_count = self.store.reset_stale(self.today(now))
        idle = self.rate_limiter.discard_idle(now.timestamp())
        logger.info("Daily usage sweep: %d counters reset, %d idle rate windows dropped", reset_count, idle)
        return reset_count

    def reset_caller(self, key: str) -> None:
        """Manual override: zero one caller's counter and rate windows."""
        self.store.reset(key, self.today())
        self.rate_limiter.clear(key)
        logger.info("Usage reset for %s", key)

    # -------------------------------------------------------------------------

    def _within(
        self,
        tier: Tier,
        policy: TierPolicy,
        used: int,
        reset_time: datetime,
        allowed: bool
    ) -> UsageDecision:
        remaining = None
        state = QuotaState.WITHIN_LIMIT
        if policy.daily_limit is not None:
            remaining = max(0, policy.daily_limit - used)
            if remaining == 0:
                state = QuotaState.AT_LIMIT
        return UsageDecision(
            allowed=allowed,
            remaining=remaining,
            reset_time=reset_time,
            state=state,
            tier=tier,
            daily_limit=policy.daily_limit,
            used=used,
        )

    def _rate_limited(
        self,
        tier: Tier,
        policy: TierPolicy,
        used: int,
        reset_time: datetime,
        retry_after: Optional[int]
    ) -> UsageDecision:
        remaining = None
        if policy.daily_limit is not None:
            remaining = max(0, policy.daily_limit - used)
        return UsageDecision(
            allowed=False,
            remaining=remaining,
            reset_time=reset_time,
            reason=UsageReason.RATE_LIMIT,
            state=QuotaState.RATE_LIMITED,
            tier=tier,
            daily_limit=policy.daily_limit,
            used=used,
            retry_after_seconds=retry_after,
        )

    def _degraded(self, tier: Tier, policy: TierPolicy, reset_time: datetime) -> UsageDecision:
        if self.fail_open:
            return UsageDecision(
                allowed=True,
                remaining=None,
                reset_time=reset_time,
                tier=tier,
                daily_limit=policy.daily_limit,
                degraded=True,
            )
        return UsageDecision(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            reason=UsageReason.DAILY_LIMIT,
            state=QuotaState.AT_LIMIT,
            tier=tier,
            daily_limit=policy.daily_limit,
            degraded=True,
        )


# =============================================================================
# TIER ACCESS AND USER MESSAGES
# =============================================================================

def check_tier_access(
    calculator_type: Union[CalculatorType, str],
    tier: Union[Tier, str],
    catalogue: Dict[CalculatorType, CalculatorInfo] = CALCULATOR_CATALOGUE
) -> TierAccess:
    """
    Whether the tier may open a calculator at all (independent of quota).

    Free calculators are open to everyone, anonymous callers included.
    """
    tier = resolve_tier(tier)
    required = Tier(catalogue[CalculatorType(calculator_type)].min_tier)
    has_access = required == Tier.FREE or tier.level >= required.level

    upgrade_url = "/pricing"
    message = ""
    if not has_access:
        if required == Tier.REGISTERED and tier == Tier.ANONYMOUS:
            upgrade_url = "/auth/signup"
            message = "Esta calculadora requer registo gratuito."
        elif required == Tier.PRO:
            message = "Esta calculadora requer subscrição Pro."
        else:
            message = "Acesso negado."

    return TierAccess(
        has_access=has_access,
        required_tier=required,
        current_tier=tier,
        upgrade_url=upgrade_url,
        message=message,
    )


def usage_warning(decision: UsageDecision) -> UsageWarning:
    """Nudges shown before the caller actually hits the daily cap."""
    if decision.daily_limit is None or decision.tier == Tier.PRO or decision.daily_limit == 0:
        return UsageWarning(should_warn=False)

    ratio = decision.used / decision.daily_limit
    if ratio >= 0.8:
        remaining = max(0, decision.daily_limit - decision.used)
        return UsageWarning(
            should_warn=True,
            warning_type="approaching_limit",
            message=f"Restam apenas {remaining} cálculos hoje. Considere fazer upgrade para uso ilimitado.",
        )

    if ratio >= 0.5 and decision.tier == Tier.ANONYMOUS:
        return UsageWarning(
            should_warn=True,
            warning_type="upgrade_suggested",
            message="Registe-se gratuitamente para dobrar o seu limite diário de cálculos.",
        )

    return UsageWarning(should_warn=False)


def upgrade_recommendations(
    decision: UsageDecision,
    calculations_today: int,
    calculations_this_week: int,
    policies: Dict[Tier, TierPolicy] = TIER_POLICIES
) -> UpgradeRecommendation:
    """
    Suggest a higher tier from today's and this week's usage.

    Anonymous callers are pointed at free registration unless their weekly
    usage is consistently high; every other capped tier is pointed at Pro.
    """
    if decision.tier == Tier.PRO or decision.daily_limit is None:
        return UpgradeRecommendation(recommended_tier=Tier.PRO)

    daily_limit = decision.daily_limit
    reasons = []
    should_recommend = False
    recommended = Tier.REGISTERED

    if decision.used >= daily_limit:
        should_recommend = True
        reasons.append("Atingiu o limite diário")

    if calculations_this_week > daily_limit * 5:
        should_recommend = True
        recommended = Tier.PRO
        reasons.append("Utilização consistentemente alta")

    if decision.tier == Tier.ANONYMOUS:
        registered_limit = get_tier_policy(Tier.REGISTERED, policies).daily_limit
        benefits = [
            f"Duplicar limite diário ({registered_limit} vs {daily_limit} cálculos)",
            "Histórico de cálculos guardado",
            "Acesso a funcionalidades adicionais",
        ]
        if not should_recommend and calculations_today >= 3:
            should_recommend = True
            reasons.append("Utilizador ativo")
    else:
        recommended = Tier.PRO
        benefits = [
            "Cálculos ilimitados",
            "Gestão de clientes",
            "Relatórios avançados",
            "Exportação de dados",
            "Suporte prioritário",
        ]

    return UpgradeRecommendation(
        should_recommend_upgrade=should_recommend,
        recommended_tier=recommended,
        reasons=reasons,
        benefits=benefits,
    )


def enforcement_message(decision: UsageDecision) -> str:
    """Short user-facing text for a decision."""
    if decision.allowed:
        if decision.remaining is not None and decision.remaining <= 2:
            return f"Restam {decision.remaining} cálculos hoje."
        return ""
    if decision.reason == UsageReason.RATE_LIMIT:
        return "Muitas tentativas. Aguarde alguns minutos."
    return "Limite diário atingido."
