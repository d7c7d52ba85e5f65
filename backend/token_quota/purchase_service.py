"""
Purchase Reconciliation Service

Drives a token purchase from checkout to credit:

    pending -> processing -> completed | failed
    pending | processing -> expired   (sweep, 15 minute lifetime)

Idempotency:
- (order_id, owner_id) is unique, so re-creating a purchase returns the existing row
- Every transition is a status-conditioned update
- completed is written before the credit, so a sweep or a failure can never
  land on a row whose tokens were already granted
- The credit itself is guarded on the account (see QuotaService.credit_purchase)
  and marked on the row with credited_at, so duplicate completion webhooks
  never credit twice

Lifecycle writes are reserved for internal services (the payment webhook
handler and the sweep). Owners may only read their own purchases.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .authorization import authorize_owner, require_service
from .config import (
    PENDING_PURCHASE_TTL_MINUTES,
    MIN_PURCHASE_TOKENS,
    MAX_PURCHASE_TOKENS,
    DEFAULT_CURRENCY,
    DEFAULT_CREDIT_TIER,
    UNLIMITED_TIERS,
)
from .exceptions import ValidationError, NotFound, InvalidTransition
from .models import PendingPurchase, PurchaseStatus, PurchaseStats
from .quota_service import QuotaService, validate_tier, calculate_price_minor
from .timeutil import utc_now, to_iso

logger = logging.getLogger(__name__)

PENDING = PurchaseStatus.PENDING.value
PROCESSING = PurchaseStatus.PROCESSING.value
COMPLETED = PurchaseStatus.COMPLETED.value
FAILED = PurchaseStatus.FAILED.value
EXPIRED = PurchaseStatus.EXPIRED.value


class PurchaseReconciliationService:
    """Pending purchase lifecycle. Construct one per request with the caller."""

    def __init__(self, db, caller: Optional[dict]):
        self.db = db
        self.caller = caller
        self.quota_service = QuotaService(db, caller)

    def _key(self, order_id: str, owner_id: str) -> Dict[str, str]:
        if not isinstance(order_id, str) or not order_id.strip():
            raise ValidationError("order_id is required")
        return {"order_id": order_id, "owner_id": owner_id}

    def _authorize_write(self, owner_id: str):
        require_service(self.caller)
        authorize_owner(self.caller, owner_id)

    async def _find(self, order_id: str, owner_id: str) -> Dict[str, Any]:
        purchase = await self.db.pending_purchases.find_one(self._key(order_id, owner_id), {"_id": 0})
        if not purchase:
            raise NotFound(f"Purchase {order_id} not found")
        return purchase

    async def _transition(
        self,
        order_id: str,
        owner_id: str,
        from_statuses: List[str],
        to_status: str,
        extra: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Move the row to to_status only if it is currently in from_statuses.

        Returns the updated row, or None when the row was in another status.
        """
        now = now or utc_now()
        key = self._key(order_id, owner_id)
        previous = await self.db.pending_purchases.find_one_and_update(
            {**key, "status": {"$in": from_statuses}},
            {"$set": {"status": to_status, "updated_at": to_iso(now), **(extra or {})}},
            projection={"_id": 0, "status": 1},
            return_document=ReturnDocument.BEFORE,
        )
        if not previous:
            return None
        # The filter matched on status, so read the row back by its key
        return await self.db.pending_purchases.find_one(key, {"_id": 0})

    # ==================== CREATE ====================

    async def create_pending_purchase(
        self,
        owner_id: str,
        order_id: str,
        token_amount: int,
        amount_minor: Optional[int] = None,
        currency: str = DEFAULT_CURRENCY,
        credit_tier=None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record a checkout attempt.

        amount_minor defaults to the list price of token_amount.
        Re-creating with the same (order_id, owner_id) returns the existing
        row unchanged.
        """
        self._authorize_write(owner_id)
        key = self._key(order_id, owner_id)

        if isinstance(token_amount, bool) or not isinstance(token_amount, int):
            raise ValidationError("token_amount must be an integer")
        if token_amount < MIN_PURCHASE_TOKENS or token_amount > MAX_PURCHASE_TOKENS:
            raise ValidationError(
                f"token_amount must be between {MIN_PURCHASE_TOKENS} and {MAX_PURCHASE_TOKENS}"
            )
        if amount_minor is None:
            amount_minor = calculate_price_minor(token_amount)
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValidationError("amount_minor must be a positive integer")

        credit_tier = validate_tier(credit_tier or DEFAULT_CREDIT_TIER)
        if credit_tier in UNLIMITED_TIERS:
            raise ValidationError(f"Purchased tokens cannot be credited to tier {credit_tier}")

        now = now or utc_now()
        purchase_doc = PendingPurchase(
            id=str(uuid.uuid4()),
            **key,
            token_amount=token_amount,
            amount_minor=amount_minor,
            currency=currency,
            credit_tier=credit_tier,
            status=PENDING,
            expires_at=to_iso(now + timedelta(minutes=PENDING_PURCHASE_TTL_MINUTES)),
            created_at=to_iso(now),
            updated_at=to_iso(now),
        ).model_dump(mode="json", exclude_none=True)

        try:
            result = await self.db.pending_purchases.update_one(
                key,
                {"$setOnInsert": purchase_doc},
                upsert=True
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            created = False

        purchase = await self.db.pending_purchases.find_one(key, {"_id": 0})
        if created:
            logger.info(f"Created pending purchase {order_id} for {owner_id}: {token_amount} tokens")
        else:
            logger.info(f"Duplicate purchase request {order_id} for {owner_id}, returning existing row")
        return purchase

    # ==================== TRANSITIONS ====================

    async def claim_for_verification(
        self,
        order_id: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        pending -> processing.

        Already processing or completed rows are returned as they are.
        A pending row past its expiry is marked expired and rejected.
        """
        self._authorize_write(owner_id)
        now = now or utc_now()
        purchase = await self._find(order_id, owner_id)
        status = purchase["status"]

        if status in (PROCESSING, COMPLETED):
            return purchase
        if status != PENDING:
            raise InvalidTransition(order_id, status, PROCESSING)

        if purchase["expires_at"] < to_iso(now):
            await self._transition(order_id, owner_id, [PENDING], EXPIRED, now=now)
            logger.info(f"Purchase {order_id} expired before verification")
            raise InvalidTransition(order_id, EXPIRED, PROCESSING)

        claimed = await self._transition(order_id, owner_id, [PENDING], PROCESSING, now=now)
        if claimed:
            logger.info(f"Purchase {order_id} claimed for verification")
            return claimed

        # Lost a race with another transition; decide from the fresh row
        purchase = await self._find(order_id, owner_id)
        if purchase["status"] in (PROCESSING, COMPLETED):
            return purchase
        raise InvalidTransition(order_id, purchase["status"], PROCESSING)

    async def complete_purchase(
        self,
        order_id: str,
        owner_id: str,
        payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        processing -> completed, then credit token_amount to the purchase's credit tier.

        The status is written first. Once a row is completed no sweep or
        failure can move it, so the credit that follows is always owed.
        Calling again on a completed row finishes a credit that an earlier
        call did not get to (credited_at unset) and otherwise returns the row.

        Raises:
            InvalidTransition: the row is not processing or completed
            ValidationError: payment_id already belongs to another purchase
        """
        self._authorize_write(owner_id)
        now = now or utc_now()
        purchase = await self._find(order_id, owner_id)
        status = purchase["status"]

        if status not in (PROCESSING, COMPLETED):
            raise InvalidTransition(order_id, status, COMPLETED)

        if status == PROCESSING:
            extra = {"completed_at": to_iso(now)}
            if payment_id:
                extra["payment_id"] = payment_id

            try:
                completed = await self._transition(order_id, owner_id, [PROCESSING], COMPLETED, extra, now)
            except DuplicateKeyError:
                logger.warning(f"Payment {payment_id} already recorded on another purchase, rejecting {order_id}")
                raise ValidationError(f"payment_id {payment_id} is already used by another purchase")

            if completed:
                logger.info(f"Purchase {order_id} completed: {purchase['token_amount']} tokens for {owner_id}")
                purchase = completed
            else:
                # Lost a race; only a concurrent completion is acceptable
                purchase = await self._find(order_id, owner_id)
                if purchase["status"] != COMPLETED:
                    raise InvalidTransition(order_id, purchase["status"], COMPLETED)

        if purchase.get("credited_at"):
            logger.info(f"Purchase {order_id} already completed and credited")
            return purchase

        await self.quota_service.credit_purchase(
            owner_id,
            purchase.get("credit_tier", DEFAULT_CREDIT_TIER),
            order_id,
            purchase["token_amount"],
            now=now,
        )
        await self.db.pending_purchases.update_one(
            {**self._key(order_id, owner_id), "credited_at": {"$exists": False}},
            {"$set": {"credited_at": to_iso(now)}}
        )
        return await self._find(order_id, owner_id)

    async def fail_purchase(
        self,
        order_id: str,
        owner_id: str,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """pending | processing -> failed. No balance effect."""
        self._authorize_write(owner_id)
        purchase = await self._find(order_id, owner_id)
        status = purchase["status"]

        if status == FAILED:
            return purchase
        if status not in (PENDING, PROCESSING):
            raise InvalidTransition(order_id, status, FAILED)

        failed = await self._transition(
            order_id, owner_id, [PENDING, PROCESSING], FAILED,
            {"error_message": error_message}, now
        )
        if failed:
            logger.info(f"Purchase {order_id} failed: {error_message}")
            return failed

        purchase = await self._find(order_id, owner_id)
        if purchase["status"] == FAILED:
            return purchase
        raise InvalidTransition(order_id, purchase["status"], FAILED)

    async def expire_stale_purchases(self, now: Optional[datetime] = None) -> int:
        """Mark pending and processing rows past expires_at as expired."""
        require_service(self.caller)
        now = now or utc_now()

        result = await self.db.pending_purchases.update_many(
            {"status": {"$in": [PENDING, PROCESSING]}, "expires_at": {"$lt": to_iso(now)}},
            {"$set": {"status": EXPIRED, "updated_at": to_iso(now)}}
        )
        if result.modified_count:
            logger.info(f"Expired {result.modified_count} stale purchases")
        return result.modified_count

    # ==================== QUERIES ====================

    async def get_pending_purchase(self, order_id: str, owner_id: str) -> Dict[str, Any]:
        authorize_owner(self.caller, owner_id)
        return await self._find(order_id, owner_id)

    async def get_purchase_history(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Completed purchases, newest first."""
        authorize_owner(self.caller, owner_id)
        limit = max(1, min(int(limit), 100))
        offset = max(0, int(offset))

        cursor = (
            self.db.pending_purchases.find({"owner_id": owner_id, "status": COMPLETED}, {"_id": 0})
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        return await cursor.to_list(limit)

    async def get_purchase_stats(self, owner_id: str) -> PurchaseStats:
        authorize_owner(self.caller, owner_id)
        purchases = await self.db.pending_purchases.find(
            {"owner_id": owner_id, "status": COMPLETED},
            {"_id": 0, "token_amount": 1, "amount_minor": 1, "completed_at": 1, "created_at": 1}
        ).to_list(None)

        if not purchases:
            return PurchaseStats()

        total_spent = sum(p["amount_minor"] for p in purchases)
        last = max(p.get("completed_at") or p["created_at"] for p in purchases)

        return PurchaseStats(
            total_purchases=len(purchases),
            total_tokens=sum(p["token_amount"] for p in purchases),
            total_spent=total_spent,
            average_purchase=round(total_spent / len(purchases), 2),
            last_purchase_date=last,
        )
