"""
Token Quota API Routes

User endpoints (JWT):
- GET /api/token-quota - Balance at the user's current tier
- GET /api/token-quota/entitlement - Resolved tier with trial and grace details
- GET /api/token-quota/usage - Usage history
- GET /api/token-quota/purchases - Completed purchases
- GET /api/token-quota/purchases/stats - Purchase totals

Service endpoints (X-Service-Key, called by the payment webhook handler):
- POST /api/token-quota/purchases - Create pending purchase
- POST /api/token-quota/purchases/{order_id}/claim
- POST /api/token-quota/purchases/{order_id}/complete
- POST /api/token-quota/purchases/{order_id}/fail
- POST /api/token-quota/purchases/expire - Run the expiry sweep now
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from utils.auth import get_current_user, get_service_caller
from .entitlement_resolver import resolve_tier, get_entitlement_status
from .exceptions import QuotaError
from .models import (
    QuotaAccountResponse,
    EntitlementStatus,
    PurchaseStats,
    PurchaseCreateRequest,
    PurchaseTransitionRequest,
)
from .purchase_service import PurchaseReconciliationService
from .quota_service import QuotaService
from .usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

token_quota_router = APIRouter(prefix="/token-quota", tags=["Token Quota"])


def get_db():
    from database import db
    return db


def _http_error(e: QuotaError) -> HTTPException:
    if e.status_code >= 500:
        logger.warning(f"Quota request failed: {e.error_code} {e.message}")
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== BALANCE ENDPOINTS ====================

@token_quota_router.get("", response_model=QuotaAccountResponse)
async def get_balance(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """
    Get current user's balance at the tier they are entitled to right now.

    Applies (and persists) the daily reset if it is due.
    """
    try:
        tier = await resolve_tier(db, user["id"])
        return await QuotaService(db, user).get_balance(user["id"], tier)
    except QuotaError as e:
        raise _http_error(e)


@token_quota_router.get("/entitlement", response_model=EntitlementStatus)
async def get_entitlement(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return await get_entitlement_status(db, user["id"])


@token_quota_router.get("/usage")
async def get_usage(
    limit: int = Query(20),
    offset: int = Query(0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """
    Get usage history, newest first.

    limit is clamped to 1-100; dates are inclusive (UTC).
    """
    records = await UsageLedger(db).get_history(user["id"], limit, offset, start_date, end_date)
    return {
        "records": records,
        "count": len(records)
    }


# ==================== PURCHASE HISTORY ====================

@token_quota_router.get("/purchases")
async def get_purchases(
    limit: int = Query(20),
    offset: int = Query(0),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    try:
        purchases = await PurchaseReconciliationService(db, user).get_purchase_history(user["id"], limit, offset)
    except QuotaError as e:
        raise _http_error(e)

    return {
        "purchases": purchases,
        "count": len(purchases)
    }


@token_quota_router.get("/purchases/stats", response_model=PurchaseStats)
async def get_purchase_stats(user: dict = Depends(get_current_user), db=Depends(get_db)):
    try:
        return await PurchaseReconciliationService(db, user).get_purchase_stats(user["id"])
    except QuotaError as e:
        raise _http_error(e)


# ==================== PURCHASE LIFECYCLE (SERVICE) ====================

@token_quota_router.post("/purchases")
async def create_purchase(
    body: PurchaseCreateRequest,
    caller: dict = Depends(get_service_caller),
    db=Depends(get_db),
):
    """
    Record a checkout attempt before redirecting to the payment provider.

    Idempotent on (order_id, owner_id).
    """
    service = PurchaseReconciliationService(db, caller)
    try:
        return await service.create_pending_purchase(
            owner_id=body.owner_id,
            order_id=body.order_id,
            token_amount=body.token_amount,
            amount_minor=body.amount_minor,
            currency=body.currency,
            credit_tier=body.credit_tier,
        )
    except QuotaError as e:
        raise _http_error(e)


@token_quota_router.post("/purchases/expire")
async def expire_purchases(caller: dict = Depends(get_service_caller), db=Depends(get_db)):
    try:
        expired = await PurchaseReconciliationService(db, caller).expire_stale_purchases()
    except QuotaError as e:
        raise _http_error(e)
    return {"expired": expired}


@token_quota_router.post("/purchases/{order_id}/claim")
async def claim_purchase(
    order_id: str,
    body: PurchaseTransitionRequest,
    caller: dict = Depends(get_service_caller),
    db=Depends(get_db),
):
    try:
        return await PurchaseReconciliationService(db, caller).claim_for_verification(order_id, body.owner_id)
    except QuotaError as e:
        raise _http_error(e)


@token_quota_router.post("/purchases/{order_id}/complete")
async def complete_purchase(
    order_id: str,
    body: PurchaseTransitionRequest,
    caller: dict = Depends(get_service_caller),
    db=Depends(get_db),
):
    """
    Payment verified: credit tokens and mark completed.

    Safe to call again for duplicate webhooks.
    """
    try:
        return await PurchaseReconciliationService(db, caller).complete_purchase(
            order_id, body.owner_id, payment_id=body.payment_id
        )
    except QuotaError as e:
        raise _http_error(e)


@token_quota_router.post("/purchases/{order_id}/fail")
async def fail_purchase(
    order_id: str,
    body: PurchaseTransitionRequest,
    caller: dict = Depends(get_service_caller),
    db=Depends(get_db),
):
    try:
        return await PurchaseReconciliationService(db, caller).fail_purchase(
            order_id, body.owner_id, error_message=body.error_message
        )
    except QuotaError as e:
        raise _http_error(e)
