"""Per-user daily quota counters."""

from __future__ import annotations

from sqlalchemy import CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from custodian.db.models.base import Base, TimestampTZ


class DailyQuota(Base):
    """Analyses used by one user during one local calendar day.

    Rows are created on the first reservation of a period and never
    deleted; a new period_key simply starts a new row. used_count is only
    changed through a conditional UPDATE so concurrent admissions cannot
    overshoot daily_limit.
    """

    __tablename__ = "daily_quotas"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    # Local date in the reference timezone, YYYY-MM-DD
    period_key: Mapped[str] = mapped_column(String(10), primary_key=True)

    used_count: Mapped[int] = mapped_column(default=0, nullable=False)
    daily_limit: Mapped[int] = mapped_column(nullable=False)

    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    __table_args__ = (CheckConstraint("used_count >= 0", name="used_count_non_negative"),)
