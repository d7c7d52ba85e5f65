"""
scheduler_setup.py
------------------
APScheduler wiring for token quota background jobs.

SCHEDULE:
  every PURCHASE_SWEEP_INTERVAL_SECONDS → expire pending/processing purchases
                                          older than their 15 minute lifetime

STARTUP USAGE:
    from services.scheduler_setup import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, db)
    scheduler.start()
"""

import logging

from apscheduler.triggers.interval import IntervalTrigger

from token_quota.authorization import SERVICE_CALLER
from token_quota.config import PURCHASE_SWEEP_INTERVAL_SECONDS
from token_quota.purchase_service import PurchaseReconciliationService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Public entry point, call once at app startup
# ---------------------------------------------------------------------------

def setup_scheduler(scheduler, db, interval_seconds: int = PURCHASE_SWEEP_INTERVAL_SECONDS) -> None:
    """
    Register token quota jobs with the provided APScheduler instance.

    Call this BEFORE scheduler.start().
    """
    scheduler.add_job(
        make_expiry_sweep_job(db),
        IntervalTrigger(seconds=interval_seconds),
        id="purchase_expiry_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )

    logger.info(f"Token quota scheduler registered: purchase expiry sweep every {interval_seconds}s")


# ---------------------------------------------------------------------------
# Job factories
# ---------------------------------------------------------------------------

def make_expiry_sweep_job(db):
    """Returns the sweep coroutine. Failures are logged and retried on the next tick."""
    async def expiry_sweep():
        try:
            expired = await PurchaseReconciliationService(db, SERVICE_CALLER).expire_stale_purchases()
        except Exception as e:
            logger.error(f"[SWEEP] Purchase expiry sweep failed: {e}")
            return
        logger.debug(f"[SWEEP] Sweep finished, {expired} expired")

    return expiry_sweep
