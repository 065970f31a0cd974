"""
Tests for the usage journal.
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.db.models import UsageRecord, utc_now
from gateway.services.identity import IdentityService
from gateway.services.usage import UsageJournal


@pytest.fixture
async def user_id(db_session: AsyncSession) -> int:
    user = await IdentityService(db_session).find_or_create_user("usage@example.com")
    return user.user_id


async def test_summary_groups_by_provider_and_model(db_session: AsyncSession, user_id: int):
    journal = UsageJournal(db_session)
    await journal.record(user_id, "openai", "gpt-4o", 100, 50, 4)
    await journal.record(user_id, "openai", "gpt-4o", 10, 5, 1)
    await journal.record(user_id, "anthropic", "claude-opus-4", 1000, 200, 60)

    summary = await journal.summary(user_id)

    assert [(item.provider, item.model) for item in summary] == [
        ("anthropic", "claude-opus-4"),
        ("openai", "gpt-4o"),
    ]
    gpt = summary[1]
    assert gpt.requests == 2
    assert gpt.total_input_tokens == 110
    assert gpt.total_output_tokens == 55
    assert gpt.total_cost == 5


async def test_summary_window_excludes_old_records(db_session: AsyncSession, user_id: int):
    db_session.add(
        UsageRecord(
            user_id=user_id,
            provider="openai",
            model="gpt-4o",
            input_tokens=1,
            output_tokens=1,
            cost_minor=1,
            created_at=utc_now() - timedelta(days=45),
        )
    )
    await db_session.commit()

    assert await UsageJournal(db_session).summary(user_id) == []


async def test_recent_newest_first_with_limit(db_session: AsyncSession, user_id: int):
    journal = UsageJournal(db_session)
    for i in range(5):
        await journal.record(user_id, "openai", f"model-{i}", i, i, i)

    recent = await journal.recent(user_id, limit=3)

    assert [entry.model for entry in recent] == ["model-4", "model-3", "model-2"]
    assert recent[0].cost == 4
    assert recent[0].created_at.tzinfo is not None


async def test_journal_is_per_user(db_session: AsyncSession, user_id: int):
    other = await IdentityService(db_session).find_or_create_user("someone@example.com")
    await UsageJournal(db_session).record(other.user_id, "openai", "gpt-4o", 1, 1, 1)

    assert await UsageJournal(db_session).recent(user_id) == []
