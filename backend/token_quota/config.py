"""
Token Quota Configuration and Constants

Daily limits, purchase bounds, lock timings and entitlement windows.
Timing values can be overridden from the environment; daily limits and
entitlement windows can also be overridden from admin_settings at runtime.
"""

import os
from datetime import datetime

# ==================== DAILY LIMITS PER TIER ====================
# Sentinel used for tiers with no daily cap
UNLIMITED_DAILY_LIMIT = 999_999_999

TIER_DAILY_LIMITS = {
    "free": 8,
    "standard": 20,
    "plus": 50,
    "premium": UNLIMITED_DAILY_LIMIT,
}

UNLIMITED_TIERS = {"premium"}

# Higher rank wins when several subscriptions are entitled at once
TIER_RANK = {
    "free": 0,
    "standard": 1,
    "plus": 2,
    "premium": 3,
}

# ==================== CONSUMPTION LIMITS ====================
MIN_CONSUME_COST = 1
MAX_CONSUME_COST = 1000

# ==================== FEATURE PRICING ====================
# Base cost of one generation per content language
DEFAULT_TOKEN_COSTS = {
    "en": 10,
    "hi": 15,
    "ml": 15,
}
DEFAULT_TOKEN_COST = 10  # unknown languages price like English

MODE_MULTIPLIERS = {
    "quick": 0.5,
    "standard": 1.0,
    "deep": 1.5,
    "lectio": 1.2,
    "sermon": 2.0,
}

# 4 tokens = 1 rupee; prices are stored in paise
TOKENS_PER_RUPEE = 4
MINOR_UNITS_PER_RUPEE = 100

# ==================== PURCHASES ====================
PENDING_PURCHASE_TTL_MINUTES = 15
MIN_PURCHASE_TOKENS = 1
MAX_PURCHASE_TOKENS = 10000
DEFAULT_CURRENCY = "INR"
# Purchased tokens land on this tier's account unless the caller says otherwise
DEFAULT_CREDIT_TIER = "standard"
# Recent order ids kept on an account to reject a concurrent second credit
CREDIT_GUARD_WINDOW = 200

# Seconds between expiry sweeps of stale pending purchases
PURCHASE_SWEEP_INTERVAL_SECONDS = int(os.environ.get("PURCHASE_SWEEP_INTERVAL_SECONDS", "300"))

# ==================== ACCOUNT LOCK ====================
ACCOUNT_LOCK_LEASE_SECONDS = float(os.environ.get("ACCOUNT_LOCK_LEASE_SECONDS", "10"))
ACCOUNT_LOCK_TIMEOUT_SECONDS = float(os.environ.get("ACCOUNT_LOCK_TIMEOUT_SECONDS", "5"))
ACCOUNT_LOCK_POLL_SECONDS = float(os.environ.get("ACCOUNT_LOCK_POLL_SECONDS", "0.05"))

# ==================== ENTITLEMENT ====================
# Subscription statuses that grant the subscribed tier
ENTITLED_STATUSES = {
    "active",
    "trial",
    "trialing",
    "authenticated",  # mandate authorised, first charge pending
    "in_progress",  # renewal charge in flight
    "pending_cancellation",  # cancelled at period end, still paid up
}

LAUNCH_TRIAL_END = datetime.fromisoformat(
    os.environ.get("LAUNCH_TRIAL_END", "2026-03-31T23:59:59+05:30")
)
GRACE_PERIOD_DAYS = int(os.environ.get("GRACE_PERIOD_DAYS", "7"))

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "VALIDATION_ERROR": "The request is invalid.",
    "NOT_AUTHENTICATED": "Authentication is required.",
    "PERMISSION_DENIED": "You cannot access another user's quota.",
    "INSUFFICIENT_BALANCE": "Not enough tokens. Wait for the daily reset or purchase more.",
    "NOT_FOUND": "The requested record does not exist.",
    "INVALID_TRANSITION": "This purchase cannot move to the requested state.",
    "LOCK_TIMEOUT": "The account is busy. Please retry.",
}
