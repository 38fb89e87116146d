"""Daily analysis quota arbitration.

Each user may start a fixed number of analyses per period. A period is a
calendar day in a reference timezone given as a fixed UTC offset (UTC+9
by default), keyed by its local date ``YYYY-MM-DD``. Counters are never
reset in place: a new day simply uses a new key.

Admission is a single conditional increment in the store, so concurrent
requests for the last slot admit exactly one of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream
from custodian.services.audit_log import AuditEventType

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.services.audit_log import AuditLogService
    from custodian.services.store import EngineStore

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 3
DEFAULT_TIMEZONE_OFFSET_MINUTES = 540
DEFAULT_MAX_RESERVATION_AMOUNT = 10


class QuotaError(Exception):
    """Base exception for quota errors."""

    pass


class QuotaExceededError(QuotaError):
    """Raised when a reservation would take a user over the daily limit.

    Attributes:
        used: Admissions already used in the period.
        limit: Daily limit that applied.
        reset_at: When the next period opens (UTC).
    """

    def __init__(self, used: int, limit: int, reset_at: datetime) -> None:
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            f"Daily limit of {limit} analyses reached, resets at {reset_at.isoformat()}"
        )


class InvalidReservationError(QuotaError):
    """Raised when a reservation amount is outside the accepted range."""

    def __init__(self, amount: int, max_amount: int) -> None:
        self.amount = amount
        self.max_amount = max_amount
        super().__init__(f"Reservation amount must be between 1 and {max_amount}, got {amount}")


@dataclass(frozen=True)
class QuotaDecision:
    """Result of an admission attempt."""

    allowed: bool
    remaining: int
    used: int
    limit: int
    reset_at: datetime
    period_key: str


@dataclass(frozen=True)
class QuotaStatus:
    """Read-only view of a user's usage in one period."""

    used: int
    remaining: int
    limit: int
    reset_at: datetime
    exceeded: bool
    period_key: str
    usage_percentage: float


def _tz(offset_minutes: int) -> timezone:
    return timezone(timedelta(minutes=offset_minutes))


def period_key_for(moment: datetime, timezone_offset_minutes: int) -> str:
    """Return the period key (local date) that contains ``moment``."""
    return moment.astimezone(_tz(timezone_offset_minutes)).date().isoformat()


def reset_at(period_key: str, timezone_offset_minutes: int) -> datetime:
    """Return the UTC instant at which the period ``period_key`` opens.

    This is local midnight of that date in the reference timezone. For
    ``"2025-03-10"`` at UTC+9 the result is 2025-03-09T15:00:00Z.

    Raises:
        ValueError: If ``period_key`` is not an ISO date.
    """
    day = date.fromisoformat(period_key)
    local_midnight = datetime.combine(day, time.min, tzinfo=_tz(timezone_offset_minutes))
    return local_midnight.astimezone(UTC)


def next_period_key(period_key: str) -> str:
    """Return the key of the day after ``period_key``."""
    return (date.fromisoformat(period_key) + timedelta(days=1)).isoformat()


class QuotaArbiter:
    """Admits or rejects analyses against the per-user daily limit.

    Example:
        arbiter = QuotaArbiter(store, daily_limit=3)
        decision = await arbiter.check_and_reserve("user-1")
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        store: EngineStore,
        *,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        timezone_offset_minutes: int = DEFAULT_TIMEZONE_OFFSET_MINUTES,
        max_reservation_amount: int = DEFAULT_MAX_RESERVATION_AMOUNT,
        audit: AuditLogService | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the arbiter.

        Args:
            store: Store providing the atomic conditional increment.
            daily_limit: Default limit when a call does not pass one.
            timezone_offset_minutes: Offset of the reference timezone from UTC.
            max_reservation_amount: Largest amount a single call may reserve.
            audit: Optional audit trail for reservation outcomes.
            clock: Time source.
        """
        self._store = store
        self._daily_limit = daily_limit
        self._offset = timezone_offset_minutes
        self._max_amount = max_reservation_amount
        self._audit = audit
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def timezone_offset_minutes(self) -> int:
        return self._offset

    def current_period_key(self, now: datetime | None = None) -> str:
        """Return the period key for ``now`` (defaults to the clock)."""
        return period_key_for(now or self._clock(), self._offset)

    def next_period_key(self, period_key: str) -> str:
        return next_period_key(period_key)

    def reset_at(self, period_key: str) -> datetime:
        """Return when ``period_key`` opens, in UTC."""
        return reset_at(period_key, self._offset)

    def next_reset(self, period_key: str) -> datetime:
        """Return when the period after ``period_key`` opens."""
        return reset_at(next_period_key(period_key), self._offset)

    async def check_and_reserve(
        self,
        user_id: str,
        period_key: str | None = None,
        limit: int | None = None,
        amount: int = 1,
    ) -> QuotaDecision:
        """Reserve ``amount`` admissions if they fit within the limit.

        Args:
            user_id: User requesting admission.
            period_key: Period to charge; defaults to the current period.
            limit: Limit to enforce; defaults to the configured daily limit.
            amount: Admissions to reserve.

        Returns:
            QuotaDecision describing the outcome. Nothing is charged when
            ``allowed`` is False.

        Raises:
            InvalidReservationError: If ``amount`` is outside 1..max_reservation_amount.
        """
        if amount < 1 or amount > self._max_amount:
            raise InvalidReservationError(amount, self._max_amount)

        key = period_key or self.current_period_key()
        effective_limit = self._daily_limit if limit is None else limit
        allowed, used = await self._store.increment_if_below(user_id, key, amount, effective_limit)
        decision = QuotaDecision(
            allowed=allowed,
            remaining=max(0, effective_limit - used),
            used=used,
            limit=effective_limit,
            reset_at=self.next_reset(key),
            period_key=key,
        )

        if allowed:
            logger.info(
                "Quota reserved: user_id=%s, period=%s, used=%d/%d",
                user_id,
                key,
                used,
                effective_limit,
            )
        else:
            logger.info(
                "Quota exceeded: user_id=%s, period=%s, used=%d/%d, requested=%d",
                user_id,
                key,
                used,
                effective_limit,
                amount,
            )

        if self._audit is not None:
            summary = {
                "period_key": key,
                "amount": amount,
                "used": used,
                "limit": effective_limit,
            }
            await self._audit.append(
                stream=AuditStream.QUOTA,
                event_type=(
                    AuditEventType.QUOTA_RESERVED if allowed else AuditEventType.QUOTA_EXCEEDED
                ),
                payload={"user_id": user_id, **summary},
                actor_type="user",
                actor_id=user_id,
                resource_type="quota",
                resource_id=f"{user_id}:{key}",
                summary=summary,
            )

        return decision

    async def reserve(
        self,
        user_id: str,
        period_key: str | None = None,
        limit: int | None = None,
        amount: int = 1,
    ) -> QuotaDecision:
        """Like check_and_reserve, but raise when the reservation is refused.

        Raises:
            QuotaExceededError: If the reservation does not fit.
            InvalidReservationError: If ``amount`` is out of range.
        """
        decision = await self.check_and_reserve(user_id, period_key, limit, amount)
        if not decision.allowed:
            raise QuotaExceededError(decision.used, decision.limit, decision.reset_at)
        return decision

    async def status(
        self,
        user_id: str,
        period_key: str | None = None,
        limit: int | None = None,
    ) -> QuotaStatus:
        """Return the usage of a user without charging anything."""
        key = period_key or self.current_period_key()
        effective_limit = self._daily_limit if limit is None else limit
        usage = await self._store.get_quota(user_id, key)
        used = usage.used_count if usage else 0
        return QuotaStatus(
            used=used,
            remaining=max(0, effective_limit - used),
            limit=effective_limit,
            reset_at=self.next_reset(key),
            exceeded=used >= effective_limit,
            period_key=key,
            usage_percentage=round(used / effective_limit * 100, 2) if effective_limit else 100.0,
        )
