"""
Tests for subscription feature gates and the monthly extraction quota.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest
from nodes.feature_gates import (
    FEATURE_GATES,
    FeatureNotAvailableError,
    QuotaExceededError,
    SubscriptionTier,
    can_use_feature,
    check_extraction_allowed,
    get_feature_limit,
    is_quota_capped,
    month_window,
)


class TestFeatureGates:

    def test_every_feature_covers_every_tier(self):
        for feature, gates in FEATURE_GATES.items():
            assert set(gates) == set(SubscriptionTier), feature

    def test_ai_extraction_paid_only(self):
        assert not can_use_feature("free", "ai_extraction")
        assert can_use_feature("pro", "ai_extraction")
        assert can_use_feature("elite", "ai_extraction")

    def test_numeric_limits(self):
        assert get_feature_limit("pro", "ai_monthly_credits") == 50
        assert math.isinf(get_feature_limit("elite", "ai_monthly_credits"))
        assert get_feature_limit("free", "max_active_deals") == 3
        assert not can_use_feature("free", "ai_monthly_credits")

    def test_unknown_tier_reads_as_free(self):
        assert SubscriptionTier.from_string("platinum") == SubscriptionTier.FREE
        assert SubscriptionTier.from_string(None) == SubscriptionTier.FREE

    def test_unknown_feature(self):
        with pytest.raises(KeyError):
            get_feature_limit("pro", "teleportation")

    def test_quota_capped(self):
        assert is_quota_capped("pro")
        assert not is_quota_capped("elite")


class TestCheckExtractionAllowed:

    def test_free_denied(self):
        with pytest.raises(FeatureNotAvailableError):
            check_extraction_allowed("free", 0)

    def test_pro_with_49_allowed(self):
        check_extraction_allowed("pro", 49)

    def test_pro_with_50_rejected(self):
        with pytest.raises(QuotaExceededError) as exc_info:
            check_extraction_allowed("pro", 50)
        assert exc_info.value.used == 50
        assert exc_info.value.limit == 50
        assert exc_info.value.code == "limit_reached"
        assert "50/50" in exc_info.value.message

    def test_elite_unlimited(self):
        check_extraction_allowed("elite", 10_000)

    def test_check_then_act_race_is_not_prevented(self):
        # Two requests that both read used=49 before either records its
        # attempt are both allowed; the cap can be exceeded by one.
        observed_by_first = 49
        observed_by_second = 49
        check_extraction_allowed("pro", observed_by_first)
        check_extraction_allowed("pro", observed_by_second)


class TestMonthWindow:

    def test_mid_month(self):
        start, end = month_window(datetime(2025, 3, 17, 15, 30, tzinfo=timezone.utc))
        assert start == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 4, 1, tzinfo=timezone.utc)

    def test_december_rolls_year(self):
        start, end = month_window(datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc))
        assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_naive_treated_as_utc(self):
        start, _ = month_window(datetime(2025, 6, 1, 0, 0))
        assert start == datetime(2025, 6, 1, tzinfo=timezone.utc)

    def test_other_timezone_converted(self):
        # 2025-07-01 01:00 at UTC+3 is still June in UTC
        tz = timezone(timedelta(hours=3))
        start, end = month_window(datetime(2025, 7, 1, 1, 0, tzinfo=tz))
        assert start == datetime(2025, 6, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 7, 1, tzinfo=timezone.utc)
