"""
Entitlement Resolver - Decides which tier a user is on right now

Read-only: never writes to any collection and never caches. Every call
re-reads the user profile, subscriptions and entitlement settings.

Priority (first match wins):
1. Admin override            -> premium
2. Active premium trial      -> premium
3. Entitled subscription     -> its tier (premium > plus > standard)
4. Admin-set free subscription -> free (overrides the launch trial)
5. Launch trial window       -> standard
6. Grace period after trial  -> standard (only users created before the cutoff)
7. Default                   -> free

Store errors propagate so a user is never silently downgraded.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Tuple, List, Dict, Any

from .config import ENTITLED_STATUSES, TIER_RANK, UNLIMITED_TIERS
from .models import Tier, EntitlementStatus, SubscriptionRecord
from .settings import load_entitlement_settings, load_daily_limits
from .timeutil import utc_now, parse_iso

logger = logging.getLogger(__name__)


def is_subscription_entitled(subscription: Dict[str, Any], now: datetime) -> bool:
    """Status grants access and the paid period has not ended."""
    status = (subscription.get("status") or "").lower()
    if status not in ENTITLED_STATUSES:
        return False

    if subscription.get("plan_tier") not in TIER_RANK:
        return False

    period_end = parse_iso(subscription.get("period_end"))
    return period_end is None or period_end > now


def best_subscription(subscriptions: List[Dict[str, Any]], now: datetime) -> Optional[Dict[str, Any]]:
    """Highest-ranked entitled paid subscription, ignoring recency."""
    paid = [
        sub for sub in subscriptions
        if is_subscription_entitled(sub, now) and sub["plan_tier"] != Tier.FREE.value
    ]
    if not paid:
        return None
    return max(paid, key=lambda sub: TIER_RANK[sub["plan_tier"]])


def _premium_trial_window(profile: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    return (
        parse_iso(profile.get("premium_trial_started_at")),
        parse_iso(profile.get("premium_trial_ends_at")),
    )


def is_premium_trial_active(profile: Dict[str, Any], now: datetime) -> bool:
    started_at, ends_at = _premium_trial_window(profile)
    return bool(started_at and ends_at and started_at <= now < ends_at)


def was_eligible_for_trial(profile: Dict[str, Any], launch_trial_end: datetime) -> bool:
    """Only accounts created on or before the launch cutoff get the grace period."""
    created_at = parse_iso(profile.get("created_at"))
    return created_at is not None and created_at <= launch_trial_end


def evaluate_tier(
    profile: Optional[Dict[str, Any]],
    subscriptions: List[Dict[str, Any]],
    settings: Dict[str, Any],
    now: datetime,
) -> Tuple[Tier, str]:
    """
    Pure tier decision.

    Args:
        profile: User document (may be None for unknown users)
        subscriptions: All subscription documents of the user
        settings: Output of load_entitlement_settings
        now: Evaluation instant (timezone aware)

    Returns:
        Tuple of (tier, reason)
    """
    profile = profile or {}
    launch_trial_end = settings["launch_trial_end"]
    grace_end = launch_trial_end + timedelta(days=settings["grace_period_days"])

    if profile.get("is_admin"):
        return Tier.PREMIUM, "admin"

    if is_premium_trial_active(profile, now):
        return Tier.PREMIUM, "premium_trial"

    subscription = best_subscription(subscriptions, now)
    if subscription:
        return Tier(subscription["plan_tier"]), "subscription"

    if any(
        sub.get("plan_tier") == Tier.FREE.value and is_subscription_entitled(sub, now)
        for sub in subscriptions
    ):
        return Tier.FREE, "admin_free"

    if now <= launch_trial_end:
        return Tier.STANDARD, "launch_trial"

    if launch_trial_end < now <= grace_end and was_eligible_for_trial(profile, launch_trial_end):
        return Tier.STANDARD, "grace_period"

    return Tier.FREE, "default"


async def _load_inputs(db, owner_id: str):
    profile = await db.users.find_one({"id": owner_id}, {"_id": 0, "password": 0})
    if not profile:
        logger.debug(f"No user profile for {owner_id}, resolving without one")

    subscriptions = await db.subscriptions.find({"owner_id": owner_id}, {"_id": 0}).to_list(100)
    settings = await load_entitlement_settings(db)
    return profile, subscriptions, settings


async def resolve_tier(db, owner_id: str, now: Optional[datetime] = None) -> Tier:
    """Resolve the tier owner_id is entitled to at `now` (defaults to current UTC time)."""
    now = now or utc_now()
    profile, subscriptions, settings = await _load_inputs(db, owner_id)

    tier, reason = evaluate_tier(profile, subscriptions, settings, now)
    logger.debug(f"Resolved tier for {owner_id}: {tier.value} ({reason})")
    return tier


def _whole_days(delta: timedelta) -> int:
    seconds = delta.total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


async def get_entitlement_status(db, owner_id: str, now: Optional[datetime] = None) -> EntitlementStatus:
    """Tier plus the trial, grace and subscription details behind it."""
    now = now or utc_now()
    profile, subscriptions, settings = await _load_inputs(db, owner_id)
    profile = profile or {}

    tier, reason = evaluate_tier(profile, subscriptions, settings, now)
    daily_limits = await load_daily_limits(db)

    launch_trial_end = settings["launch_trial_end"]
    grace_end = launch_trial_end + timedelta(days=settings["grace_period_days"])
    eligible = was_eligible_for_trial(profile, launch_trial_end)
    in_grace = launch_trial_end < now <= grace_end and eligible

    trial_started_at, trial_ends_at = _premium_trial_window(profile)
    premium_trial_active = is_premium_trial_active(profile, now)
    subscription = best_subscription(subscriptions, now)

    return EntitlementStatus(
        owner_id=owner_id,
        tier=tier,
        reason=reason,
        daily_limit=daily_limits[tier.value],
        is_unlimited=tier.value in UNLIMITED_TIERS,
        is_launch_trial_active=now <= launch_trial_end,
        days_until_trial_end=_whole_days(launch_trial_end - now),
        is_grace_period=in_grace,
        grace_days_remaining=_whole_days(grace_end - now) if in_grace else 0,
        was_eligible_for_trial=eligible,
        has_premium_trial=premium_trial_active,
        premium_trial_days_remaining=_whole_days(trial_ends_at - now) if premium_trial_active else 0,
        can_start_premium_trial=(
            trial_started_at is None
            and subscription is None
            and not profile.get("is_admin")
        ),
        subscription=SubscriptionRecord(**subscription) if subscription else None,
    )
