"""
Test Suite: DB init and scheduled sweep
=======================================
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import DuplicateKeyError

from token_quota.db_init import (
    INIT_VERSION, REQUIRED_COLLECTIONS, REQUIRED_INDEXES, bootstrap, check_environment, ensure_indexes,
)
from token_quota.authorization import SERVICE_CALLER
from token_quota.purchase_service import PurchaseReconciliationService
from token_quota.timeutil import utc_now
from services.scheduler_setup import setup_scheduler, make_expiry_sweep_job


class TestIndexes:

    @pytest.mark.asyncio
    async def test_all_indexes_created(self, db):
        for collection_name, _, options in REQUIRED_INDEXES:
            info = await db[collection_name].index_information()
            assert options["name"] in info

    @pytest.mark.asyncio
    async def test_ensure_indexes_is_idempotent(self, db):
        await ensure_indexes(db)
        await ensure_indexes(db)

    @pytest.mark.asyncio
    async def test_account_identity_is_unique(self, db):
        await db.quota_accounts.insert_one({"owner_id": "u", "tier": "free"})
        with pytest.raises(DuplicateKeyError):
            await db.quota_accounts.insert_one({"owner_id": "u", "tier": "free"})


class TestBootstrap:

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self):
        fresh = AsyncMongoMockClient()["token_quota_fresh"]

        actions = await bootstrap(fresh, dry_run=True)

        assert len(actions) == len(REQUIRED_COLLECTIONS) + len(REQUIRED_INDEXES) + 1
        assert all(action.startswith("would") for action in actions)
        assert await fresh.list_collection_names() == []

    @pytest.mark.asyncio
    async def test_up_to_date_database_has_nothing_to_do(self, db):
        assert await bootstrap(db) == []

        stamp = await db.token_quota_meta.find_one({"_id": "token_quota_init"})
        assert stamp["version"] == INIT_VERSION


class TestEnvironmentGuard:

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("TOKEN_QUOTA_INIT_CONFIRM", raising=False)

        allowed, message = check_environment()

        assert allowed is False
        assert "TOKEN_QUOTA_INIT_CONFIRM" in message

    def test_production_with_confirmation(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("TOKEN_QUOTA_INIT_CONFIRM", "YES")

        assert check_environment()[0] is True


class TestScheduler:

    def test_registers_sweep_job(self):
        scheduler = MagicMock()

        setup_scheduler(scheduler, db=MagicMock(), interval_seconds=60)

        scheduler.add_job.assert_called_once()
        assert scheduler.add_job.call_args.kwargs["id"] == "purchase_expiry_sweep"

    @pytest.mark.asyncio
    async def test_sweep_job_expires_stale_rows(self, db):
        service = PurchaseReconciliationService(db, SERVICE_CALLER)
        await service.create_pending_purchase("user-1", "order-1", 10, 100, now=utc_now() - timedelta(hours=1))

        await make_expiry_sweep_job(db)()

        purchase = await service.get_pending_purchase("order-1", "user-1")
        assert purchase["status"] == "expired"
