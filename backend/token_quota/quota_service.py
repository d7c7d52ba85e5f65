"""
Quota Service

Core account operations including:
- Lazy account creation per (owner, tier)
- Daily reset, persisted under the account lease
- Consumption (daily allowance first, then purchased balance)
- Exactly-once crediting of purchased tokens

CRITICAL: Every read-check-update runs while holding the account lease,
and every write inside it is fenced on the lease token. Two concurrent
consumers can never spend the same token.
"""

import logging
import math
from datetime import datetime
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .account_lock import AccountLease
from .authorization import authorize_owner, require_service
from .config import (
    UNLIMITED_TIERS,
    TIER_DAILY_LIMITS,
    MIN_CONSUME_COST,
    MAX_CONSUME_COST,
    ERROR_CODES,
    DEFAULT_TOKEN_COSTS,
    DEFAULT_TOKEN_COST,
    MODE_MULTIPLIERS,
    TOKENS_PER_RUPEE,
    MINOR_UNITS_PER_RUPEE,
    CREDIT_GUARD_WINDOW,
)
from .exceptions import ValidationError, LockTimeout
from .models import ConsumeContext, ConsumeResult, QuotaAccount, QuotaAccountResponse, Tier
from .settings import load_daily_limits
from .timeutil import utc_now, to_iso, utc_date_str
from .usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


def validate_tier(tier) -> str:
    value = tier.value if isinstance(tier, Tier) else tier
    if value not in TIER_DAILY_LIMITS:
        raise ValidationError(f"Unknown tier: {tier!r}")
    return value


def validate_cost(cost) -> int:
    if isinstance(cost, bool) or not isinstance(cost, int):
        raise ValidationError(f"Cost must be an integer, got {cost!r}")
    if cost < MIN_CONSUME_COST or cost > MAX_CONSUME_COST:
        raise ValidationError(f"Cost must be between {MIN_CONSUME_COST} and {MAX_CONSUME_COST}")
    return cost


def calculate_token_cost(language: Optional[str] = None, mode: Optional[str] = None) -> int:
    """
    Token cost of one generation.

    Base cost comes from the content language (unknown languages use the
    default), scaled by the study mode multiplier and rounded up.
    """
    base = DEFAULT_TOKEN_COSTS.get((language or "").lower(), DEFAULT_TOKEN_COST)
    mode = mode or "standard"
    if mode not in MODE_MULTIPLIERS:
        raise ValidationError(f"Unknown mode: {mode!r}")
    cost = math.ceil(base * MODE_MULTIPLIERS[mode])
    return max(MIN_CONSUME_COST, min(cost, MAX_CONSUME_COST))


def calculate_price_minor(token_amount: int) -> int:
    """Price of a token pack in minor currency units (whole rupees, rounded up)."""
    if isinstance(token_amount, bool) or not isinstance(token_amount, int) or token_amount <= 0:
        raise ValidationError("token_amount must be a positive integer")
    return math.ceil(token_amount / TOKENS_PER_RUPEE) * MINOR_UNITS_PER_RUPEE


class QuotaService:
    """Service for quota accounts. Construct one per request with the caller."""

    def __init__(self, db, caller: Optional[dict]):
        self.db = db
        self.caller = caller
        self.ledger = UsageLedger(db)

    # ==================== ACCOUNT ====================

    async def get_or_create_account(self, owner_id: str, tier) -> Dict[str, Any]:
        """
        Get existing account or create one lazily.

        Does not apply the daily reset; use get_account for a fresh view.
        """
        authorize_owner(self.caller, owner_id)
        return await self._get_or_create(owner_id, validate_tier(tier))

    async def _get_or_create(self, owner_id: str, tier: str) -> Dict[str, Any]:
        account = await self.db.quota_accounts.find_one(
            {"owner_id": owner_id, "tier": tier},
            {"_id": 0}
        )
        if account:
            return account

        now = utc_now()
        limits = await load_daily_limits(self.db)
        daily_limit = limits[tier]

        account_doc = {
            "owner_id": owner_id,
            "tier": tier,
            "daily_limit": daily_limit,
            "daily_available": daily_limit,
            "purchased_balance": 0,
            "consumed_today": 0,
            "last_reset_date": utc_date_str(now),
            "credited_order_ids": [],
            "lock_token": None,
            "lock_expires_at": None,
            "created_at": to_iso(now),
            "updated_at": to_iso(now),
        }

        # Upsert so concurrent first accesses create a single document
        try:
            await self.db.quota_accounts.update_one(
                {"owner_id": owner_id, "tier": tier},
                {"$setOnInsert": account_doc},
                upsert=True
            )
            logger.info(f"Created quota account for {owner_id} on tier {tier}")
        except DuplicateKeyError:
            logger.debug(f"Quota account {owner_id}/{tier} created concurrently")

        return await self.db.quota_accounts.find_one({"owner_id": owner_id, "tier": tier}, {"_id": 0})

    async def ensure_fresh_account(self, lease: AccountLease, now: datetime) -> Dict[str, Any]:
        """
        Apply the daily reset if the account was last reset before today (UTC).

        Must be called while holding the lease. The reset is written to the
        database, never computed on the fly. Unlimited tiers never reset.
        """
        account = lease.account
        if account["tier"] in UNLIMITED_TIERS:
            return account

        today = utc_date_str(now)
        if account.get("last_reset_date") and account["last_reset_date"] >= today:
            return account

        limits = await load_daily_limits(self.db)
        daily_limit = limits[account["tier"]]

        updated = await self.db.quota_accounts.find_one_and_update(
            lease.fence(),
            {
                "$set": {
                    "daily_limit": daily_limit,
                    "daily_available": daily_limit,
                    "consumed_today": 0,
                    "last_reset_date": today,
                    "updated_at": to_iso(now),
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise LockTimeout("Account lease lost during daily reset")

        logger.info(
            f"Daily reset for {account['owner_id']}/{account['tier']}: "
            f"{account.get('last_reset_date')} -> {today}"
        )
        lease.account = updated
        return updated

    async def get_account(self, owner_id: str, tier, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current account state with any due reset persisted."""
        authorize_owner(self.caller, owner_id)
        tier = validate_tier(tier)
        await self._get_or_create(owner_id, tier)

        async with AccountLease(self.db, owner_id, tier) as lease:
            account = await self.ensure_fresh_account(lease, now or utc_now())

        return _public_view(account)

    async def get_balance(self, owner_id: str, tier, now: Optional[datetime] = None) -> QuotaAccountResponse:
        """Get account data formatted for API response."""
        account = QuotaAccount(**await self.get_account(owner_id, tier, now))
        is_unlimited = account.tier.value in UNLIMITED_TIERS

        return QuotaAccountResponse(
            owner_id=owner_id,
            tier=account.tier,
            is_unlimited=is_unlimited,
            daily_limit=account.daily_limit,
            daily_available=account.daily_available,
            purchased_balance=account.purchased_balance,
            total_available=account.daily_available + account.purchased_balance,
            consumed_today=account.consumed_today,
            last_reset_date=account.last_reset_date,
        )

    # ==================== CONSUMPTION ====================

    async def consume(
        self,
        owner_id: str,
        tier,
        cost: int,
        context: Optional[ConsumeContext] = None,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """
        Spend `cost` tokens from the account, daily allowance first.

        Insufficient balance is reported in the result (success=False) and
        leaves the account untouched. Unlimited tiers always succeed and
        record a zero-cost usage entry.

        Raises:
            NotAuthenticated / PermissionDenied: caller check failed
            ValidationError: bad owner, tier or cost
            LockTimeout: the account lease could not be taken in time
        """
        authorize_owner(self.caller, owner_id)
        tier = validate_tier(tier)
        cost = validate_cost(cost)
        await self._get_or_create(owner_id, tier)

        async with AccountLease(self.db, owner_id, tier) as lease:
            now = now or utc_now()
            account = await self.ensure_fresh_account(lease, now)

            if tier in UNLIMITED_TIERS:
                await self.db.quota_accounts.update_one(
                    lease.fence(),
                    {"$set": {"updated_at": to_iso(now)}}
                )
                record_id = await self.ledger.record(owner_id, tier, cost, 0, 0, context, now)
                return ConsumeResult(
                    success=True,
                    daily_remaining=account["daily_available"],
                    purchased_remaining=account["purchased_balance"],
                    daily_limit=account["daily_limit"],
                    usage_record_id=record_id,
                )

            daily_available = account["daily_available"]
            purchased_balance = account["purchased_balance"]

            if daily_available + purchased_balance < cost:
                logger.info(
                    f"Insufficient balance for {owner_id}/{tier}: need {cost}, "
                    f"have {daily_available} daily + {purchased_balance} purchased"
                )
                return ConsumeResult(
                    success=False,
                    daily_remaining=daily_available,
                    purchased_remaining=purchased_balance,
                    daily_limit=account["daily_limit"],
                    error_code="INSUFFICIENT_BALANCE",
                    error_message=ERROR_CODES["INSUFFICIENT_BALANCE"],
                )

            from_daily = min(daily_available, cost)
            from_purchased = cost - from_daily

            updated = await self.db.quota_accounts.find_one_and_update(
                lease.fence(),
                {
                    "$inc": {
                        "daily_available": -from_daily,
                        "purchased_balance": -from_purchased,
                        "consumed_today": from_daily,
                    },
                    "$set": {"updated_at": to_iso(now)},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if not updated:
                raise LockTimeout("Account lease lost before the balance update")

            record_id = await self.ledger.record(
                owner_id, tier, cost, from_daily, from_purchased, context, now
            )

        logger.debug(f"Consumed {cost} for {owner_id}/{tier}: daily={from_daily} purchased={from_purchased}")

        return ConsumeResult(
            success=True,
            daily_remaining=updated["daily_available"],
            purchased_remaining=updated["purchased_balance"],
            daily_limit=updated["daily_limit"],
            daily_used=from_daily,
            purchased_used=from_purchased,
            usage_record_id=record_id,
        )

    # ==================== CREDITS ====================

    async def credit_purchase(
        self,
        owner_id: str,
        tier,
        order_id: str,
        token_amount: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Add purchased tokens for an order, at most once per order.

        Only internal services may credit. The update only matches while
        order_id is absent from credited_order_ids, so repeated calls for
        the same order are no-ops. The list keeps the most recent
        CREDIT_GUARD_WINDOW orders; older orders are guarded by the
        purchase row (see PurchaseReconciliationService.complete_purchase).

        Returns:
            True if tokens were credited by this call, False if the order
            had already been credited
        """
        require_service(self.caller)
        authorize_owner(self.caller, owner_id)
        tier = validate_tier(tier)
        if tier in UNLIMITED_TIERS:
            raise ValidationError(f"Cannot credit purchased tokens to unlimited tier {tier}")
        await self._get_or_create(owner_id, tier)

        async with AccountLease(self.db, owner_id, tier) as lease:
            now = now or utc_now()
            await self.ensure_fresh_account(lease, now)

            result = await self.db.quota_accounts.update_one(
                lease.fence(credited_order_ids={"$ne": order_id}),
                {
                    "$inc": {"purchased_balance": token_amount},
                    "$push": {
                        "credited_order_ids": {"$each": [order_id], "$slice": -CREDIT_GUARD_WINDOW}
                    },
                    "$set": {"updated_at": to_iso(now)},
                }
            )
            if result.modified_count:
                logger.info(f"Credited {token_amount} tokens to {owner_id}/{tier} for order {order_id}")
                return True

            still_held = await self.db.quota_accounts.find_one(lease.fence(), {"_id": 0, "owner_id": 1})
            if not still_held:
                raise LockTimeout("Account lease lost before the credit")

        logger.info(f"Order {order_id} already credited to {owner_id}/{tier}, skipping")
        return False


def _public_view(account: Dict[str, Any]) -> Dict[str, Any]:
    """Strip lease and idempotency bookkeeping from an account document."""
    hidden = {"lock_token", "lock_expires_at", "credited_order_ids"}
    return {key: value for key, value in account.items() if key not in hidden}
