"""
Test Suite: Quota Guard
=======================

Tests:
- tier is resolved before consuming
- insufficient balance raises InsufficientBalance (402)
- decorator maps quota errors to HTTPException and runs the handler on success
- cost can be priced from language and mode
"""

import pytest
from fastapi import HTTPException
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_quota.exceptions import InsufficientBalance
from token_quota.guard import QuotaGuard, quota_guarded
from token_quota.models import ConsumeContext
from token_quota.quota_service import QuotaService


async def make_admin_free(db, owner_id):
    """Pin the user to the free tier regardless of the launch trial window."""
    await db.users.insert_one({"id": owner_id, "created_at": "2026-01-01T00:00:00+00:00"})
    await db.subscriptions.insert_one({
        "owner_id": owner_id, "provider": "admin", "plan_tier": "free", "status": "active",
    })


class TestQuotaGuard:

    @pytest.mark.asyncio
    async def test_consumes_at_resolved_tier(self, db, user):
        await make_admin_free(db, user["id"])

        result = await QuotaGuard(db, user).check_and_consume(user["id"], "flashcards", 3)

        assert result.success is True
        assert result.daily_remaining == 5
        record = await db.usage_records.find_one({"owner_id": user["id"]}, {"_id": 0})
        assert record["tier"] == "free"
        assert record["feature_name"] == "flashcards"

    @pytest.mark.asyncio
    async def test_insufficient_balance_raises(self, db, user):
        await make_admin_free(db, user["id"])
        guard = QuotaGuard(db, user)
        await guard.check_and_consume(user["id"], "flashcards", 8)

        with pytest.raises(InsufficientBalance) as exc_info:
            await guard.check_and_consume(user["id"], "flashcards", 1)

        assert exc_info.value.status_code == 402
        assert exc_info.value.details["tier"] == "free"

    @pytest.mark.asyncio
    async def test_admin_is_unlimited(self, db):
        admin = {"id": "admin-1", "is_admin": True}
        await db.users.insert_one(dict(admin))

        for _ in range(3):
            result = await QuotaGuard(db, admin).check_and_consume("admin-1", "chat", 1000)
            assert result.success is True

    @pytest.mark.asyncio
    async def test_prices_from_language_and_mode(self, db, user):
        await make_admin_free(db, user["id"])
        await QuotaService(db, user).get_or_create_account(user["id"], "free")
        await db.quota_accounts.update_one(
            {"owner_id": user["id"], "tier": "free"}, {"$set": {"purchased_balance": 20}}
        )
        context = ConsumeContext(language="hi", mode="deep")

        result = await QuotaGuard(db, user).check_and_consume(user["id"], "study_guide", context=context)

        assert (result.daily_used, result.purchased_used) == (8, 15)
        record = await db.usage_records.find_one({"owner_id": user["id"]}, {"_id": 0})
        assert record["requested_cost"] == 23
        assert record["mode"] == "deep"


class TestQuotaGuardedDecorator:

    @pytest.mark.asyncio
    async def test_runs_handler_after_consuming(self, db, user):
        await make_admin_free(db, user["id"])

        @quota_guarded("summary", cost=2, db_provider=lambda: db)
        async def handler(user: dict):
            return {"ok": True}

        assert await handler(user=user) == {"ok": True}
        account = await db.quota_accounts.find_one({"owner_id": user["id"], "tier": "free"}, {"_id": 0})
        assert account["daily_available"] == 6

    @pytest.mark.asyncio
    async def test_blocks_with_402(self, db, user):
        await make_admin_free(db, user["id"])
        called = []

        @quota_guarded("summary", cost=9, db_provider=lambda: db)
        async def handler(user: dict):
            called.append(True)

        with pytest.raises(HTTPException) as exc_info:
            await handler(user=user)

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail["error_code"] == "INSUFFICIENT_BALANCE"
        assert called == []

    @pytest.mark.asyncio
    async def test_missing_user_is_401(self, db):
        @quota_guarded("summary", db_provider=lambda: db)
        async def handler(user: dict = None):
            return {}

        with pytest.raises(HTTPException) as exc_info:
            await handler()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_prices_from_request_body(self, db, user):
        await make_admin_free(db, user["id"])

        class StudyRequest:
            language = "en"
            mode = "quick"

        @quota_guarded("study_guide", cost=None, db_provider=lambda: db)
        async def handler(body, user: dict):
            return {"ok": True}

        assert await handler(body=StudyRequest(), user=user) == {"ok": True}
        account = await db.quota_accounts.find_one({"owner_id": user["id"], "tier": "free"}, {"_id": 0})
        assert account["daily_available"] == 3
