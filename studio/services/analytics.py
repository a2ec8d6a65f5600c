from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import Direction, LedgerEntry
from studio.utils.time import as_utc, utcnow


class AnalyticsService:
    def __init__(
        self,
        session: AsyncSession,
        timezone: str = 'UTC',
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.timezone = timezone
        self.clock = clock

    async def credit_stats(self, days: int = 30) -> Dict[str, Any]:
        days = max(1, min(int(days), 365))
        since = self.clock() - timedelta(days=days)

        by_source = await self.session.execute(
            select(LedgerEntry.source, LedgerEntry.direction, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.created_at >= since)
            .group_by(LedgerEntry.source, LedgerEntry.direction)
        )
        sources = []
        credited = 0
        debited = 0
        for source, direction, total in by_source.all():
            total = int(total or 0)
            if direction == Direction.CREDIT:
                credited += total
            else:
                debited += total
            sources.append({'source': source.value, 'direction': direction.value, 'total': total})
        sources.sort(key=lambda row: (row['source'], row['direction']))

        # Bucketed in Python so the day boundary follows the billing timezone on every backend.
        rows = await self.session.execute(
            select(LedgerEntry.created_at, LedgerEntry.direction, LedgerEntry.amount)
            .where(LedgerEntry.created_at >= since)
        )
        tz = ZoneInfo(self.timezone)
        daily: Dict[str, Dict[str, int]] = defaultdict(lambda: {'credited': 0, 'debited': 0})
        for created_at, direction, amount in rows.all():
            day = as_utc(created_at).astimezone(tz).date().isoformat()
            key = 'credited' if direction == Direction.CREDIT else 'debited'
            daily[day][key] += int(amount)

        return {
            'days': days,
            'total_credited': credited,
            'total_debited': debited,
            'net': credited - debited,
            'by_source': sources,
            'daily': [{'date': day, **totals} for day, totals in sorted(daily.items())],
        }
