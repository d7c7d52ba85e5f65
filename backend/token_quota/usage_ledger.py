"""
Usage Ledger - append-only record of consumption

Records are written after the balance update has committed. A failed
append is logged and dropped: it never fails or reverses the consumption.
"""

import logging
import uuid
from datetime import datetime, date, timedelta
from typing import Optional, List, Dict, Any

from .models import ConsumeContext, UsageRecord
from .timeutil import utc_now, to_iso, parse_date

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


class UsageLedger:
    """Writes and reads usage_records."""

    def __init__(self, db):
        self.db = db

    async def record(
        self,
        owner_id: str,
        tier: str,
        requested_cost: int,
        daily_portion: int,
        purchased_portion: int,
        context: Optional[ConsumeContext] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Append one usage record.

        Returns:
            The record id, or None if the write failed
        """
        context = context or ConsumeContext()
        record_id = str(uuid.uuid4())

        record = UsageRecord(
            id=record_id,
            owner_id=owner_id,
            tier=tier,
            requested_cost=requested_cost,
            amount_charged=daily_portion + purchased_portion,
            daily_portion=daily_portion,
            purchased_portion=purchased_portion,
            **context.model_dump(),
            created_at=to_iso(now or utc_now()),
        )
        doc = record.model_dump(mode="json")

        try:
            await self.db.usage_records.insert_one(doc)
        except Exception as e:
            logger.warning(f"Failed to write usage record for {owner_id} ({context.feature_name}): {e}")
            return None

        return record_id

    async def get_history(
        self,
        owner_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        """
        Usage records newest first.

        limit is clamped to 1..100 and offset to >= 0. start and end are
        inclusive UTC dates.
        """
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        offset = max(0, int(offset))

        query: Dict[str, Any] = {"owner_id": owner_id}
        created_at: Dict[str, str] = {}
        start = parse_date(start)
        end = parse_date(end)
        if start:
            created_at["$gte"] = start.isoformat()
        if end:
            created_at["$lt"] = (end + timedelta(days=1)).isoformat()
        if created_at:
            query["created_at"] = created_at

        cursor = (
            self.db.usage_records.find(query, {"_id": 0})
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        return await cursor.to_list(limit)
