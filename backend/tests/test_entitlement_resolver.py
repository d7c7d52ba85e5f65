"""
Test Suite: Entitlement Resolver
================================

Tests tier resolution priority:
- admin > premium trial > subscription > admin free > launch trial > grace > free
- highest tier wins across simultaneous subscriptions
- status report fields
"""

import pytest
from datetime import datetime, timezone, timedelta
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_quota.entitlement_resolver import (
    evaluate_tier,
    resolve_tier,
    get_entitlement_status,
    best_subscription,
)
from token_quota.models import Tier

LAUNCH_END = datetime(2026, 3, 31, 18, 29, 59, tzinfo=timezone.utc)
SETTINGS = {"launch_trial_end": LAUNCH_END, "grace_period_days": 7}

BEFORE_LAUNCH_END = LAUNCH_END - timedelta(days=10)
IN_GRACE = LAUNCH_END + timedelta(days=3)
AFTER_GRACE = LAUNCH_END + timedelta(days=8)


def sub(tier, status="active", period_end=None, provider="razorpay"):
    return {
        "owner_id": "user-1",
        "provider": provider,
        "plan_tier": tier,
        "status": status,
        "period_start": "2026-01-01T00:00:00.000000+00:00",
        "period_end": period_end,
        "cancel_at_period_end": False,
    }


def profile(**fields):
    base = {"id": "user-1", "created_at": "2026-01-15T10:00:00.000000+00:00"}
    base.update(fields)
    return base


class TestEvaluateTier:
    """Priority ordering of the pure decision function."""

    def test_admin_wins_over_everything(self):
        tier, reason = evaluate_tier(profile(is_admin=True), [sub("free")], SETTINGS, AFTER_GRACE)
        assert tier == Tier.PREMIUM
        assert reason == "admin"

    def test_active_premium_trial(self):
        p = profile(
            premium_trial_started_at=(AFTER_GRACE - timedelta(days=1)).isoformat(),
            premium_trial_ends_at=(AFTER_GRACE + timedelta(days=6)).isoformat(),
        )
        assert evaluate_tier(p, [], SETTINGS, AFTER_GRACE) == (Tier.PREMIUM, "premium_trial")

    def test_premium_trial_end_is_exclusive(self):
        p = profile(
            premium_trial_started_at=(AFTER_GRACE - timedelta(days=7)).isoformat(),
            premium_trial_ends_at=AFTER_GRACE.isoformat(),
        )
        assert evaluate_tier(p, [], SETTINGS, AFTER_GRACE) == (Tier.FREE, "default")

    def test_higher_tier_wins_not_most_recent(self):
        subs = [sub("premium"), sub("standard", period_end="2027-01-01T00:00:00+00:00")]
        assert evaluate_tier(profile(), subs, SETTINGS, AFTER_GRACE) == (Tier.PREMIUM, "subscription")

    @pytest.mark.parametrize("status", ["active", "trialing", "trial", "authenticated", "in_progress", "pending_cancellation"])
    def test_entitled_statuses(self, status):
        tier, _ = evaluate_tier(profile(), [sub("plus", status=status)], SETTINGS, AFTER_GRACE)
        assert tier == Tier.PLUS

    @pytest.mark.parametrize("status", ["cancelled", "expired", "halted", "past_due", ""])
    def test_non_entitled_statuses_fall_through(self, status):
        assert evaluate_tier(profile(), [sub("plus", status=status)], SETTINGS, AFTER_GRACE) == (Tier.FREE, "default")

    def test_expired_period_is_not_entitled(self):
        ended = (AFTER_GRACE - timedelta(seconds=1)).isoformat()
        assert evaluate_tier(profile(), [sub("plus", period_end=ended)], SETTINGS, AFTER_GRACE)[0] == Tier.FREE

    def test_admin_free_overrides_launch_trial(self):
        assert evaluate_tier(profile(), [sub("free")], SETTINGS, BEFORE_LAUNCH_END) == (Tier.FREE, "admin_free")

    def test_paid_subscription_beats_admin_free(self):
        subs = [sub("free"), sub("standard")]
        assert evaluate_tier(profile(), subs, SETTINGS, BEFORE_LAUNCH_END) == (Tier.STANDARD, "subscription")

    def test_launch_trial_includes_cutoff_instant(self):
        assert evaluate_tier(profile(), [], SETTINGS, LAUNCH_END) == (Tier.STANDARD, "launch_trial")

    def test_grace_period_for_existing_user(self):
        assert evaluate_tier(profile(), [], SETTINGS, IN_GRACE) == (Tier.STANDARD, "grace_period")

    def test_no_grace_for_user_created_after_cutoff(self):
        late = profile(created_at=(LAUNCH_END + timedelta(hours=1)).isoformat())
        assert evaluate_tier(late, [], SETTINGS, IN_GRACE) == (Tier.FREE, "default")

    def test_grace_ends_after_configured_days(self):
        assert evaluate_tier(profile(), [], SETTINGS, AFTER_GRACE) == (Tier.FREE, "default")

    def test_unknown_user_defaults(self):
        assert evaluate_tier(None, [], SETTINGS, AFTER_GRACE) == (Tier.FREE, "default")

    def test_best_subscription_ignores_free_plans(self):
        assert best_subscription([sub("free")], AFTER_GRACE) is None


class TestResolveTierFromDatabase:
    """Resolution against stored profile, subscriptions and admin settings."""

    @pytest.mark.asyncio
    async def test_reads_subscriptions(self, db):
        await db.users.insert_one(profile())
        await db.subscriptions.insert_one(sub("plus"))

        assert await resolve_tier(db, "user-1", now=AFTER_GRACE) == Tier.PLUS

    @pytest.mark.asyncio
    async def test_admin_settings_override_launch_window(self, db):
        await db.users.insert_one(profile())
        await db.admin_settings.insert_one({
            "type": "entitlement_config",
            "launch_trial_end": (AFTER_GRACE + timedelta(days=1)).isoformat(),
            "grace_period_days": 7,
        })

        assert await resolve_tier(db, "user-1", now=AFTER_GRACE) == Tier.STANDARD

    @pytest.mark.asyncio
    async def test_is_not_cached(self, db):
        await db.users.insert_one(profile())
        now = AFTER_GRACE
        assert await resolve_tier(db, "user-1", now=now) == Tier.FREE

        await db.subscriptions.insert_one(sub("premium"))
        assert await resolve_tier(db, "user-1", now=now) == Tier.PREMIUM


class TestEntitlementStatus:

    @pytest.mark.asyncio
    async def test_grace_period_report(self, db):
        await db.users.insert_one(profile())
        await db.admin_settings.insert_one({
            "type": "entitlement_config",
            "launch_trial_end": LAUNCH_END.isoformat(),
            "grace_period_days": 7,
        })

        status = await get_entitlement_status(db, "user-1", now=IN_GRACE)

        assert status.tier == Tier.STANDARD
        assert status.reason == "grace_period"
        assert status.is_grace_period is True
        assert status.is_launch_trial_active is False
        assert status.grace_days_remaining == 4
        assert status.was_eligible_for_trial is True
        assert status.daily_limit == 20
        assert status.can_start_premium_trial is True

    @pytest.mark.asyncio
    async def test_premium_subscription_report(self, db):
        await db.users.insert_one(profile())
        await db.subscriptions.insert_one(sub("premium"))

        status = await get_entitlement_status(db, "user-1", now=AFTER_GRACE)

        assert status.tier == Tier.PREMIUM
        assert status.is_unlimited is True
        assert status.subscription.plan_tier == Tier.PREMIUM
        assert status.can_start_premium_trial is False
