"""
Token Quota Module

Tier-based daily allowance plus purchased token balance for AI features.

Collections:
- quota_accounts: One document per (owner_id, tier) holding balances and the account lease
- usage_records: Immutable record of every consumption (append-only)
- pending_purchases: Checkout attempts awaiting payment confirmation
- subscriptions: Read-only, written by the subscription webhook handler
- token_quota_meta: Init version tracking
"""

__version__ = "1.0.0"
