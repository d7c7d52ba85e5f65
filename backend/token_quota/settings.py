"""
Runtime settings loaded from admin_settings with config.py fallback.

Documents:
- {"type": "quota_config", "daily_limits": {"free": 8, ...}}
- {"type": "entitlement_config", "launch_trial_end": "...", "grace_period_days": 7}
"""

import logging
from typing import Dict, Any

from .config import TIER_DAILY_LIMITS, LAUNCH_TRIAL_END, GRACE_PERIOD_DAYS
from .timeutil import parse_iso

logger = logging.getLogger(__name__)


async def load_daily_limits(db) -> Dict[str, int]:
    """Per-tier daily limits, with admin overrides applied on top of the defaults."""
    limits = dict(TIER_DAILY_LIMITS)

    settings = await db.admin_settings.find_one({"type": "quota_config"}, {"_id": 0})
    if settings:
        for tier, limit in (settings.get("daily_limits") or {}).items():
            if tier in limits and isinstance(limit, int) and limit >= 0:
                limits[tier] = limit
            else:
                logger.warning(f"Ignoring invalid daily limit override {tier}={limit!r}")

    return limits


async def load_entitlement_settings(db) -> Dict[str, Any]:
    """Launch trial cutoff and grace period length."""
    settings = await db.admin_settings.find_one({"type": "entitlement_config"}, {"_id": 0}) or {}

    launch_trial_end = parse_iso(settings.get("launch_trial_end")) or LAUNCH_TRIAL_END
    grace_period_days = settings.get("grace_period_days", GRACE_PERIOD_DAYS)

    return {
        "launch_trial_end": launch_trial_end,
        "grace_period_days": int(grace_period_days),
    }
