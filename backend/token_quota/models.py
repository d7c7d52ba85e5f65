"""
Token Quota Data Models

Pydantic models for quota operations.
These define the structure of documents stored in MongoDB collections.
"""

from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


class Tier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PLUS = "plus"
    PREMIUM = "premium"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


# ==================== ACCOUNT MODELS ====================

class QuotaAccount(BaseModel):
    """Per-(owner, tier) balance document"""
    owner_id: str
    tier: Tier
    daily_limit: int
    daily_available: int
    purchased_balance: int = 0
    consumed_today: int = 0
    last_reset_date: str  # YYYY-MM-DD (UTC)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class QuotaAccountResponse(BaseModel):
    """Response model for balance endpoint"""
    owner_id: str
    tier: Tier
    is_unlimited: bool
    daily_limit: int
    daily_available: int
    purchased_balance: int
    total_available: int
    consumed_today: int
    last_reset_date: str


# ==================== CONSUMPTION MODELS ====================

class ConsumeContext(BaseModel):
    """Feature metadata attached to a usage record"""
    feature_name: Optional[str] = None
    operation_type: Optional[str] = None
    content_title: Optional[str] = None
    content_reference: Optional[str] = None
    language: Optional[str] = None
    mode: Optional[str] = None  # study mode, scales the token cost
    session_id: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class ConsumeResult(BaseModel):
    """Outcome of a consume call"""
    success: bool
    daily_remaining: int
    purchased_remaining: int
    daily_limit: int
    daily_used: int = 0
    purchased_used: int = 0
    usage_record_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class UsageRecord(BaseModel):
    """Immutable record of one consumption"""
    id: str
    owner_id: str
    tier: Tier
    requested_cost: int
    amount_charged: int
    daily_portion: int
    purchased_portion: int
    feature_name: Optional[str] = None
    operation_type: Optional[str] = None
    content_title: Optional[str] = None
    content_reference: Optional[str] = None
    language: Optional[str] = None
    mode: Optional[str] = None
    session_id: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None
    created_at: str


# ==================== PURCHASE MODELS ====================

class PendingPurchase(BaseModel):
    """Checkout attempt awaiting payment confirmation"""
    id: str
    order_id: str
    owner_id: str
    token_amount: int
    amount_minor: int  # smallest currency unit (paise, cents)
    currency: str = "INR"
    credit_tier: Tier = Tier.STANDARD
    status: PurchaseStatus
    payment_id: Optional[str] = None
    error_message: Optional[str] = None
    expires_at: str
    created_at: str
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    credited_at: Optional[str] = None


class PurchaseStats(BaseModel):
    total_purchases: int = 0
    total_tokens: int = 0
    total_spent: int = 0  # minor units
    average_purchase: float = 0.0
    last_purchase_date: Optional[str] = None


class PurchaseCreateRequest(BaseModel):
    owner_id: str
    order_id: str
    token_amount: int = Field(..., description="Tokens to credit on completion (1-10000)")
    amount_minor: Optional[int] = Field(None, description="Price in the smallest currency unit; defaults to the list price")
    currency: str = "INR"
    credit_tier: Optional[Tier] = None


class PurchaseTransitionRequest(BaseModel):
    owner_id: str
    payment_id: Optional[str] = None
    error_message: Optional[str] = None


# ==================== ENTITLEMENT MODELS ====================

class SubscriptionRecord(BaseModel):
    """Subscription written by the billing webhook handler (read-only here)"""
    owner_id: str
    provider: Optional[str] = None
    plan_tier: Tier
    status: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    cancel_at_period_end: bool = False


class EntitlementStatus(BaseModel):
    """Resolved tier plus the trial and grace windows behind it"""
    owner_id: str
    tier: Tier
    reason: str
    daily_limit: int
    is_unlimited: bool
    is_launch_trial_active: bool
    days_until_trial_end: int = 0
    is_grace_period: bool
    grace_days_remaining: int = 0
    was_eligible_for_trial: bool
    has_premium_trial: bool
    premium_trial_days_remaining: int = 0
    can_start_premium_trial: bool
    subscription: Optional[SubscriptionRecord] = None
