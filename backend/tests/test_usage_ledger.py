"""
Test Suite: Usage Ledger
========================

Tests:
- best-effort append never raises
- history ordering, pagination clamps and date range
"""

import pytest
from datetime import date, datetime, timezone, timedelta
from unittest.mock import AsyncMock
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_quota.models import ConsumeContext
from token_quota.usage_ledger import UsageLedger


class TestRecord:

    @pytest.mark.asyncio
    async def test_record_fields(self, db):
        ledger = UsageLedger(db)
        record_id = await ledger.record("user-1", "standard", 5, 3, 2, ConsumeContext(feature_name="summary"))

        record = await db.usage_records.find_one({"id": record_id}, {"_id": 0})
        assert record["amount_charged"] == 5
        assert record["daily_portion"] == 3
        assert record["purchased_portion"] == 2
        assert record["feature_name"] == "summary"

    @pytest.mark.asyncio
    async def test_record_swallows_store_errors(self):
        mock_db = AsyncMock()
        mock_db.usage_records.insert_one.side_effect = Exception("connection reset")

        assert await UsageLedger(mock_db).record("user-1", "free", 1, 1, 0) is None


class TestHistory:

    async def _seed(self, db, days):
        ledger = UsageLedger(db)
        base = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
        for offset in days:
            await ledger.record("user-1", "standard", 1, 1, 0, now=base + timedelta(days=offset))

    @pytest.mark.asyncio
    async def test_newest_first(self, db):
        await self._seed(db, [0, 2, 1])

        history = await UsageLedger(db).get_history("user-1")

        created = [r["created_at"] for r in history]
        assert created == sorted(created, reverse=True)

    @pytest.mark.asyncio
    async def test_limit_and_offset_are_clamped(self, db):
        await self._seed(db, range(5))
        ledger = UsageLedger(db)

        assert len(await ledger.get_history("user-1", limit=0)) == 1
        assert len(await ledger.get_history("user-1", limit=500)) == 5
        assert len(await ledger.get_history("user-1", limit=2, offset=-3)) == 2
        assert len(await ledger.get_history("user-1", limit=2, offset=4)) == 1

    @pytest.mark.asyncio
    async def test_inclusive_date_range(self, db):
        await self._seed(db, range(5))

        history = await UsageLedger(db).get_history(
            "user-1", start=date(2026, 6, 2), end=date(2026, 6, 3)
        )

        assert [r["created_at"][:10] for r in history] == ["2026-06-03", "2026-06-02"]

    @pytest.mark.asyncio
    async def test_other_owners_are_excluded(self, db):
        await self._seed(db, [0])
        await UsageLedger(db).record("user-2", "free", 1, 1, 0)

        history = await UsageLedger(db).get_history("user-1")

        assert {r["owner_id"] for r in history} == {"user-1"}
