"""Expiration bounds derived from security level and data classification.

Pure table lookups and arithmetic, no state. The three security levels
form a strictly tightening order, standard to enhanced to maximum, for
every bound: lifetime ceiling, number of extensions and grace window.
Data classification adds an independent lifetime ceiling that wins when
it is stricter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from custodian.db.models.base import DataClassification, SecurityLevel

# Lead time before nominal expiry at which clients should warn the user
WARNING_LEAD = timedelta(minutes=15)


@dataclass(frozen=True)
class LevelPolicy:
    """Bounds attached to one security level.

    Attributes:
        max_expiration_hours: Hard lifetime ceiling measured from creation.
        max_extensions: Number of extensions a session may receive.
        grace_period: Window after nominal expiry before the session is purged.
    """

    max_expiration_hours: int
    max_extensions: int
    grace_period: timedelta


SECURITY_POLICIES: dict[SecurityLevel, LevelPolicy] = {
    SecurityLevel.STANDARD: LevelPolicy(
        max_expiration_hours=168,
        max_extensions=3,
        grace_period=timedelta(minutes=30),
    ),
    SecurityLevel.ENHANCED: LevelPolicy(
        max_expiration_hours=72,
        max_extensions=2,
        grace_period=timedelta(minutes=15),
    ),
    SecurityLevel.MAXIMUM: LevelPolicy(
        max_expiration_hours=24,
        max_extensions=1,
        grace_period=timedelta(minutes=5),
    ),
}

# Classifications without an entry impose no ceiling of their own
CLASSIFICATION_CEILING_HOURS: dict[DataClassification, int] = {
    DataClassification.RESTRICTED: 12,
    DataClassification.CONFIDENTIAL: 48,
}


def max_expiration_hours(level: SecurityLevel) -> int:
    """Return the lifetime ceiling in hours for a security level."""
    return SECURITY_POLICIES[level].max_expiration_hours


def max_extensions(level: SecurityLevel) -> int:
    """Return how many extensions a security level allows."""
    return SECURITY_POLICIES[level].max_extensions


def grace_period_duration(level: SecurityLevel) -> timedelta:
    """Return the grace window for a security level."""
    return SECURITY_POLICIES[level].grace_period


def effective_expiration_hours(
    level: SecurityLevel,
    classification: DataClassification,
    requested_hours: float,
) -> float:
    """Cap a requested lifetime by the level ceiling, then by the classification ceiling.

    Args:
        level: Security level of the session.
        classification: Classification of the governed data.
        requested_hours: Lifetime asked for by the caller.

    Returns:
        The granted lifetime in hours.

    Raises:
        ValueError: If ``requested_hours`` is not positive.
    """
    if requested_hours <= 0:
        msg = f"requested_hours must be positive, got {requested_hours}"
        raise ValueError(msg)

    hours = min(requested_hours, max_expiration_hours(level))
    ceiling = CLASSIFICATION_CEILING_HOURS.get(classification)
    if ceiling is not None:
        hours = min(hours, ceiling)
    return hours


def compute_expiration(
    level: SecurityLevel,
    classification: DataClassification,
    requested_hours: float,
    *,
    created_at: datetime,
) -> datetime:
    """Return the expiry for a session created at ``created_at``."""
    hours = effective_expiration_hours(level, classification, requested_hours)
    return created_at + timedelta(hours=hours)


def compute_max_allowed_expiration(created_at: datetime, level: SecurityLevel) -> datetime:
    """Return the instant no extension may go beyond.

    Independent of classification: extensions are bounded by the level only.
    """
    return created_at + timedelta(hours=max_expiration_hours(level))


def default_extension_hours(level: SecurityLevel, default_hours: float) -> float:
    """Hours granted by an extension that does not name its own duration."""
    return min(default_hours, max_expiration_hours(level))
