"""
Usage Journal - Append-only record of billed requests.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.db.models import UsageRecord
from gateway.models.domain import RecentUsage, UsageSummaryItem
from gateway.services.identity import as_utc

SUMMARY_WINDOW_DAYS = 30


class UsageJournal:
    """Append and aggregate usage records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        user_id: int,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_minor: int,
        commit: bool = True,
    ) -> None:
        """Append one billed request. With commit=False it joins the caller's transaction."""
        self.session.add(
            UsageRecord(
                user_id=user_id,
                provider=provider,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_minor=cost_minor,
            )
        )
        if commit:
            await self.session.commit()

    async def summary(self, user_id: int, since: datetime | None = None) -> list[UsageSummaryItem]:
        """Per provider/model totals since `since` (default: last 30 days), costliest first."""
        if since is None:
            since = datetime.now(UTC) - timedelta(days=SUMMARY_WINDOW_DAYS)

        total_cost = func.sum(UsageRecord.cost_minor).label("total_cost")
        result = await self.session.execute(
            select(
                UsageRecord.provider,
                UsageRecord.model,
                func.count().label("requests"),
                func.sum(UsageRecord.input_tokens).label("total_input_tokens"),
                func.sum(UsageRecord.output_tokens).label("total_output_tokens"),
                total_cost,
            )
            .where(UsageRecord.user_id == user_id, UsageRecord.created_at >= since)
            .group_by(UsageRecord.provider, UsageRecord.model)
            .order_by(total_cost.desc())
        )
        return [
            UsageSummaryItem(
                provider=row.provider,
                model=row.model,
                requests=int(row.requests),
                total_input_tokens=int(row.total_input_tokens or 0),
                total_output_tokens=int(row.total_output_tokens or 0),
                total_cost=int(row.total_cost or 0),
            )
            for row in result.all()
        ]

    async def recent(self, user_id: int, limit: int = 20) -> list[RecentUsage]:
        """Most recent journaled requests, newest first."""
        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
            .limit(limit)
        )
        return [
            RecentUsage(
                provider=record.provider,
                model=record.model,
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                cost=record.cost_minor,
                created_at=as_utc(record.created_at) or record.created_at,
            )
            for record in result.scalars().all()
        ]
