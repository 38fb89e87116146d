"""Tests for expiration bounds per security level and classification.

Tests cover:
- Level table lookups and their strict ordering
- Classification ceilings
- Computed expiry never exceeding the level ceiling
- Rejection of non-positive lifetimes
"""

from datetime import UTC, datetime, timedelta

import pytest

from custodian.db.models.base import DataClassification, SecurityLevel
from custodian.services import expiration_policy as policy

CREATED_AT = datetime(2025, 3, 10, 3, 0, tzinfo=UTC)

LEVELS_IN_ORDER = [SecurityLevel.STANDARD, SecurityLevel.ENHANCED, SecurityLevel.MAXIMUM]


class TestLevelTable:
    """Tests for the per-level bounds."""

    def test_standard_bounds(self):
        assert policy.max_expiration_hours(SecurityLevel.STANDARD) == 168
        assert policy.max_extensions(SecurityLevel.STANDARD) == 3
        assert policy.grace_period_duration(SecurityLevel.STANDARD) == timedelta(minutes=30)

    def test_enhanced_bounds(self):
        assert policy.max_expiration_hours(SecurityLevel.ENHANCED) == 72
        assert policy.max_extensions(SecurityLevel.ENHANCED) == 2
        assert policy.grace_period_duration(SecurityLevel.ENHANCED) == timedelta(minutes=15)

    def test_maximum_bounds(self):
        assert policy.max_expiration_hours(SecurityLevel.MAXIMUM) == 24
        assert policy.max_extensions(SecurityLevel.MAXIMUM) == 1
        assert policy.grace_period_duration(SecurityLevel.MAXIMUM) == timedelta(minutes=5)

    def test_bounds_tighten_with_level(self):
        """Every bound is strictly smaller at the next stricter level."""
        for looser, stricter in zip(LEVELS_IN_ORDER, LEVELS_IN_ORDER[1:], strict=False):
            assert policy.max_expiration_hours(looser) > policy.max_expiration_hours(stricter)
            assert policy.max_extensions(looser) > policy.max_extensions(stricter)
            assert policy.grace_period_duration(looser) > policy.grace_period_duration(stricter)

    def test_every_level_has_a_policy(self):
        assert set(policy.SECURITY_POLICIES) == set(SecurityLevel)


class TestComputeExpiration:
    """Tests for compute_expiration and effective_expiration_hours."""

    def test_requested_hours_within_bounds(self):
        expires_at = policy.compute_expiration(
            SecurityLevel.STANDARD, DataClassification.INTERNAL, 10, created_at=CREATED_AT
        )
        assert expires_at == CREATED_AT + timedelta(hours=10)

    def test_capped_by_level(self):
        expires_at = policy.compute_expiration(
            SecurityLevel.MAXIMUM, DataClassification.PUBLIC, 100, created_at=CREATED_AT
        )
        assert expires_at == CREATED_AT + timedelta(hours=24)

    def test_restricted_ceiling(self):
        hours = policy.effective_expiration_hours(
            SecurityLevel.STANDARD, DataClassification.RESTRICTED, 100
        )
        assert hours == 12

    def test_confidential_ceiling(self):
        hours = policy.effective_expiration_hours(
            SecurityLevel.STANDARD, DataClassification.CONFIDENTIAL, 100
        )
        assert hours == 48

    def test_level_wins_when_stricter_than_classification(self):
        hours = policy.effective_expiration_hours(
            SecurityLevel.MAXIMUM, DataClassification.CONFIDENTIAL, 100
        )
        assert hours == 24

    @pytest.mark.parametrize("level", LEVELS_IN_ORDER)
    @pytest.mark.parametrize("classification", list(DataClassification))
    def test_never_exceeds_level_ceiling(self, level, classification):
        expires_at = policy.compute_expiration(
            level, classification, 10_000, created_at=CREATED_AT
        )
        assert expires_at <= CREATED_AT + timedelta(hours=policy.max_expiration_hours(level))

    @pytest.mark.parametrize("hours", [0, -1, -0.5])
    def test_rejects_non_positive_hours(self, hours):
        with pytest.raises(ValueError, match="must be positive"):
            policy.compute_expiration(
                SecurityLevel.STANDARD, DataClassification.INTERNAL, hours, created_at=CREATED_AT
            )


class TestExtensionBounds:
    """Tests for the extension ceiling and default extension length."""

    def test_max_allowed_expiration_ignores_classification(self):
        ceiling = policy.compute_max_allowed_expiration(CREATED_AT, SecurityLevel.ENHANCED)
        assert ceiling == CREATED_AT + timedelta(hours=72)

    def test_default_extension_hours_capped_by_level(self):
        assert policy.default_extension_hours(SecurityLevel.STANDARD, 24) == 24
        assert policy.default_extension_hours(SecurityLevel.MAXIMUM, 48) == 24
