"""
Shared fixtures for token quota tests.

Uses mongomock-motor as an in-memory stand-in for the motor database so
conditional updates, upserts and unique indexes behave like MongoDB.
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_quota.authorization import SERVICE_CALLER
from token_quota.db_init import ensure_indexes


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with all indexes."""
    client = AsyncMongoMockClient()
    database = client["token_quota_test"]
    await ensure_indexes(database)
    yield database


@pytest.fixture
def user():
    return {"id": "user-1", "email": "user1@example.com", "is_admin": False}


@pytest.fixture
def other_user():
    return {"id": "user-2", "email": "user2@example.com", "is_admin": False}


@pytest.fixture
def service_caller():
    return SERVICE_CALLER


@pytest.fixture
def fast_lock(monkeypatch):
    """Shrink lock timings so timeout tests finish quickly."""
    import token_quota.account_lock as account_lock
    monkeypatch.setattr(account_lock, "ACCOUNT_LOCK_TIMEOUT_SECONDS", 0.2)
    monkeypatch.setattr(account_lock, "ACCOUNT_LOCK_POLL_SECONDS", 0.01)
