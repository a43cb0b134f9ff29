"""
Per-requester quota ledger.

try_reserve() and release() are the only mutating operations. Both run
under a per-account lock, so one account never observes used > limit even
under concurrent reservations, while different accounts never contend.
Daily and monthly windows reset lazily: every read or write first rolls a
window whose boundary has passed, then applies the operation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from storyforge.contracts.models import QuotaReservation, QuotaView, WindowUsage, utcnow
from storyforge.observability.metrics import quota_reservations

logger = logging.getLogger(__name__)

# (daily, monthly) generation limits per subscription tier
TIER_LIMITS: dict[str, tuple[int, int]] = {
    "free": (5, 50),
    "family": (20, 300),
    "creator": (50, 1000),
    "educator": (50, 1000),
    "enterprise": (200, 5000),
}

DEFAULT_TIER = "free"


def next_daily_boundary(now: datetime) -> datetime:
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def next_monthly_boundary(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class QuotaAccount(BaseModel):
    account_id: str
    tier: str = DEFAULT_TIER
    daily_limit: int
    monthly_limit: int
    daily_used: int = 0
    monthly_used: int = 0
    daily_reset_at: datetime
    monthly_reset_at: datetime
    bonus_credits: int = 0
    bonus_expires_at: datetime | None = None

    @classmethod
    def for_tier(cls, account_id: str, tier: str, now: datetime) -> QuotaAccount:
        if tier not in TIER_LIMITS:
            raise ValueError(f"Unknown subscription tier '{tier}'")
        daily, monthly = TIER_LIMITS[tier]
        return cls(
            account_id=account_id,
            tier=tier,
            daily_limit=daily,
            monthly_limit=monthly,
            daily_reset_at=next_daily_boundary(now),
            monthly_reset_at=next_monthly_boundary(now),
        )

    @property
    def headroom(self) -> int:
        return max(0, min(self.daily_limit - self.daily_used, self.monthly_limit - self.monthly_used))


@dataclass(frozen=True)
class ReservationResult:
    ok: bool
    account: QuotaAccount
    reservation: QuotaReservation | None = None
    window: str = ""
    reset_at: datetime | None = None


class QuotaLedger:

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        default_tier: str = DEFAULT_TIER,
        accounts: Iterable[QuotaAccount] = (),
    ) -> None:
        self._clock = clock
        self._default_tier = default_tier
        self._accounts: dict[str, QuotaAccount] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for account in accounts:
            self._accounts[account.account_id] = account.model_copy()
            self._locks[account.account_id] = threading.Lock()

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def _entry(self, account_id: str) -> tuple[QuotaAccount, threading.Lock]:
        with self._registry_lock:
            if account_id not in self._accounts:
                self._accounts[account_id] = QuotaAccount.for_tier(
                    account_id, self._default_tier, self._clock()
                )
                self._locks[account_id] = threading.Lock()
            return self._accounts[account_id], self._locks[account_id]

    def open_account(
        self,
        account_id: str,
        tier: str = DEFAULT_TIER,
        bonus_credits: int = 0,
        bonus_expires_at: datetime | None = None,
    ) -> QuotaAccount:
        """Create or re-tier an account. Usage counters are preserved."""
        if tier not in TIER_LIMITS:
            raise ValueError(f"Unknown subscription tier '{tier}'")
        account, lock = self._entry(account_id)
        with lock:
            self._roll_windows(account, self._clock())
            account.tier = tier
            account.daily_limit, account.monthly_limit = TIER_LIMITS[tier]
            # A downgrade may leave counters above the new limits
            account.daily_used = min(account.daily_used, account.daily_limit)
            account.monthly_used = min(account.monthly_used, account.monthly_limit)
            if bonus_credits:
                account.bonus_credits = bonus_credits
                account.bonus_expires_at = bonus_expires_at
            return account.model_copy()

    def grant_bonus(self, account_id: str, credits: int, expires_at: datetime | None = None) -> QuotaAccount:
        if credits < 0:
            raise ValueError("bonus credits must be >= 0")
        account, lock = self._entry(account_id)
        with lock:
            self._roll_windows(account, self._clock())
            account.bonus_credits += credits
            account.bonus_expires_at = expires_at
            return account.model_copy()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def try_reserve(self, account_id: str, cost: int = 1) -> ReservationResult:
        """Atomically check-and-debit ``cost`` units.

        Tier counters are debited first; once they are exhausted unexpired
        bonus credits cover the remainder.
        """
        if cost <= 0:
            raise ValueError("reservation cost must be > 0")
        account, lock = self._entry(account_id)
        with lock:
            now = self._clock()
            self._roll_windows(account, now)

            from_counters = min(cost, account.headroom)
            from_bonus = cost - from_counters
            if from_bonus > account.bonus_credits:
                monthly_short = account.monthly_limit - account.monthly_used < cost
                window = "monthly" if monthly_short else "daily"
                reset_at = account.monthly_reset_at if monthly_short else account.daily_reset_at
                quota_reservations.labels(result="exceeded").inc()
                logger.info(
                    "Quota exceeded for %s (%s window, resets %s)",
                    account_id, window, reset_at.isoformat(),
                )
                return ReservationResult(
                    ok=False,
                    account=account.model_copy(),
                    window=window,
                    reset_at=reset_at,
                )

            account.daily_used += from_counters
            account.monthly_used += from_counters
            account.bonus_credits -= from_bonus
            reservation = QuotaReservation(
                account_id=account_id,
                cost=cost,
                from_counters=from_counters,
                from_bonus=from_bonus,
                daily_window=account.daily_reset_at,
                monthly_window=account.monthly_reset_at,
            )
            quota_reservations.labels(result="reserved").inc()
            return ReservationResult(ok=True, account=account.model_copy(), reservation=reservation)

    def release(self, reservation: QuotaReservation) -> QuotaAccount:
        """Refund a reservation. Releasing the same reservation twice is a no-op.

        Counters are only decremented for the window the debit was taken in;
        a debit made before a reset is already gone with the reset.
        """
        account, lock = self._entry(reservation.account_id)
        with lock:
            if reservation.released:
                return account.model_copy()
            self._roll_windows(account, self._clock())

            if reservation.daily_window == account.daily_reset_at:
                account.daily_used = max(0, account.daily_used - reservation.from_counters)
            if reservation.monthly_window == account.monthly_reset_at:
                account.monthly_used = max(0, account.monthly_used - reservation.from_counters)
            if reservation.from_bonus:
                account.bonus_credits += reservation.from_bonus

            reservation.released = True
            quota_reservations.labels(result="refunded").inc()
            return account.model_copy()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def apply_resets(self, account_id: str) -> bool:
        """Roll expired windows now. Returns True if anything changed."""
        account, lock = self._entry(account_id)
        with lock:
            return self._roll_windows(account, self._clock())

    def snapshot(self, account_id: str) -> QuotaAccount:
        account, lock = self._entry(account_id)
        with lock:
            self._roll_windows(account, self._clock())
            return account.model_copy()

    def view(self, account_id: str) -> QuotaView:
        account = self.snapshot(account_id)
        return QuotaView(
            account_id=account.account_id,
            tier=account.tier,
            daily=WindowUsage(
                used=account.daily_used,
                limit=account.daily_limit,
                reset_at=account.daily_reset_at,
            ),
            monthly=WindowUsage(
                used=account.monthly_used,
                limit=account.monthly_limit,
                reset_at=account.monthly_reset_at,
            ),
            bonus_credits=account.bonus_credits,
            bonus_expires_at=account.bonus_expires_at,
        )

    def accounts(self) -> list[QuotaAccount]:
        with self._registry_lock:
            ids = list(self._accounts)
        return [self.snapshot(account_id) for account_id in ids]

    # ------------------------------------------------------------------
    # Internals (caller holds the account lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _roll_windows(account: QuotaAccount, now: datetime) -> bool:
        changed = False
        if now >= account.daily_reset_at:
            account.daily_used = 0
            account.daily_reset_at = next_daily_boundary(now)
            changed = True
        if now >= account.monthly_reset_at:
            account.monthly_used = 0
            account.monthly_reset_at = next_monthly_boundary(now)
            changed = True
        if account.bonus_expires_at is not None and now >= account.bonus_expires_at:
            account.bonus_credits = 0
            account.bonus_expires_at = None
            changed = True
        return changed
