"""
Per-account exclusive lease.

The lease lives on the quota account document itself (lock_token,
lock_expires_at) and is taken with a single conditional
find_one_and_update, so it holds across processes sharing the database.
An abandoned lease becomes free once lock_expires_at passes.

Usage:
    async with AccountLease(db, owner_id, tier) as lease:
        account = lease.account
        await db.quota_accounts.update_one(lease.fence(), {...})
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from .config import (
    ACCOUNT_LOCK_LEASE_SECONDS,
    ACCOUNT_LOCK_TIMEOUT_SECONDS,
    ACCOUNT_LOCK_POLL_SECONDS,
)
from .exceptions import LockTimeout
from .timeutil import utc_now, to_iso

logger = logging.getLogger(__name__)


class AccountLease:
    """Async context manager holding the lease on one (owner_id, tier) account."""

    def __init__(
        self,
        db,
        owner_id: str,
        tier: str,
        lease_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
    ):
        self.db = db
        self.owner_id = owner_id
        self.tier = tier
        self.lease_seconds = lease_seconds or ACCOUNT_LOCK_LEASE_SECONDS
        self.timeout_seconds = timeout_seconds or ACCOUNT_LOCK_TIMEOUT_SECONDS
        self.poll_seconds = poll_seconds or ACCOUNT_LOCK_POLL_SECONDS
        self.token = str(uuid.uuid4())
        self.account: Optional[Dict[str, Any]] = None

    def fence(self, **extra) -> Dict[str, Any]:
        """Filter that only matches while this lease is still held."""
        return {"owner_id": self.owner_id, "tier": self.tier, "lock_token": self.token, **extra}

    async def acquire(self) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds

        while True:
            now = utc_now()
            previous = await self.db.quota_accounts.find_one_and_update(
                {
                    "owner_id": self.owner_id,
                    "tier": self.tier,
                    "$or": [
                        {"lock_token": None},
                        {"lock_expires_at": {"$lt": to_iso(now)}},
                    ],
                },
                {
                    "$set": {
                        "lock_token": self.token,
                        "lock_expires_at": to_iso(now + timedelta(seconds=self.lease_seconds)),
                    }
                },
                projection={"_id": 0, "owner_id": 1},
                return_document=ReturnDocument.BEFORE,
            )
            if previous:
                # Re-read through the fence; the filter above no longer matches
                account = await self.db.quota_accounts.find_one(self.fence(), {"_id": 0})
                if not account:
                    raise LockTimeout("Account lease lost right after acquisition")
                self.account = account
                return account

            if loop.time() >= deadline:
                logger.warning(f"Lock timeout on quota account {self.owner_id}/{self.tier}")
                raise LockTimeout()

            await asyncio.sleep(self.poll_seconds)

    async def release(self):
        result = await self.db.quota_accounts.update_one(
            self.fence(),
            {"$set": {"lock_token": None, "lock_expires_at": None}},
        )
        if result.matched_count == 0:
            logger.warning(f"Lease on {self.owner_id}/{self.tier} expired before release")

    async def __aenter__(self) -> "AccountLease":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.release()
        return False
