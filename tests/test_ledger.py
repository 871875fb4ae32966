"""Tests for LedgerStore."""

from datetime import date, timedelta, timezone

import pytest

from tracker.services.ledger import LedgerFilter, LedgerStore
from tracker.utils.clock import day_bounds

DAY = date(2024, 3, 11)


@pytest.fixture
def ledger(db) -> LedgerStore:
    return LedgerStore(db)


class TestAppendAndQuery:
    @pytest.mark.asyncio
    async def test_append_stores_utc_timestamp(self, ledger, make_user, local_time):
        user = await make_user("alice")

        entry = await ledger.append(
            user.id,
            30,
            "reading",
            created_at=local_time(DAY, 9),
            scope="group-1",
            category="study",
        )

        assert entry.id is not None
        assert entry.created_at.tzinfo == timezone.utc
        assert entry.created_at.hour == 1
        assert entry.scope == "group-1"
        assert entry.is_loan is False

    @pytest.mark.asyncio
    async def test_query_newest_first_by_default(self, ledger, make_user, local_time):
        user = await make_user("alice")
        await ledger.append(user.id, 10, "first", created_at=local_time(DAY, 8))
        await ledger.append(user.id, 20, "second", created_at=local_time(DAY, 9))
        await ledger.append(user.id, 30, "third", created_at=local_time(DAY, 10))

        newest = await ledger.query(user.id)
        oldest = await ledger.query(user.id, oldest_first=True)
        limited = await ledger.query(user.id, limit=2)

        assert [e.content for e in newest] == ["third", "second", "first"]
        assert [e.content for e in oldest] == ["first", "second", "third"]
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_query_filters(self, ledger, make_user, local_time, settings):
        user = await make_user("alice")
        await ledger.append(user.id, 10, "yesterday", created_at=local_time(DAY - timedelta(days=1)))
        await ledger.append(user.id, 20, "today", created_at=local_time(DAY), scope="g1")
        await ledger.append(user.id, 60, "loan", created_at=local_time(DAY), is_loan=True)

        start, end = day_bounds(DAY, settings.zone)
        today = await ledger.query(user.id, LedgerFilter(start=start, end=end))
        normal_today = await ledger.query(user.id, LedgerFilter(start=start, end=end, is_loan=False))
        group = await ledger.query(user.id, LedgerFilter(scope="g1"))

        assert {e.content for e in today} == {"today", "loan"}
        assert [e.content for e in normal_today] == ["today"]
        assert [e.content for e in group] == ["today"]

    @pytest.mark.asyncio
    async def test_entries_are_per_user(self, ledger, make_user, local_time):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await ledger.append(alice.id, 10, "a", created_at=local_time(DAY))
        await ledger.append(bob.id, 20, "b", created_at=local_time(DAY))

        assert [e.content for e in await ledger.query(alice.id)] == ["a"]


class TestAggregates:
    @pytest.mark.asyncio
    async def test_aggregate_and_totals(self, ledger, make_user, local_time):
        user = await make_user("alice")
        await ledger.append(user.id, 30, "a", created_at=local_time(DAY, 8))
        await ledger.append(user.id, 45, "b", created_at=local_time(DAY, 9))
        await ledger.append(user.id, 100, "loan", created_at=local_time(DAY, 10), is_loan=True)

        everything = await ledger.aggregate(user.id)
        normal = await ledger.aggregate(user.id, LedgerFilter(is_loan=False))
        normal_total, loan_total = await ledger.totals(user.id)

        assert everything.count == 3
        assert everything.total_duration == 175
        assert normal.count == 2
        assert normal.total_duration == 75
        assert (normal_total, loan_total) == (75, 100)

    @pytest.mark.asyncio
    async def test_empty_aggregate_is_zero(self, ledger, make_user):
        user = await make_user("alice")

        aggregate = await ledger.aggregate(user.id)

        assert aggregate.count == 0
        assert aggregate.total_duration == 0
        assert await ledger.totals(user.id) == (0, 0)


class TestDeleteMostRecent:
    @pytest.mark.asyncio
    async def test_deletes_newest_entry_in_range(self, ledger, make_user, local_time, settings):
        user = await make_user("alice")
        await ledger.append(user.id, 10, "morning", created_at=local_time(DAY, 8))
        await ledger.append(user.id, 20, "evening", created_at=local_time(DAY, 20))

        start, end = day_bounds(DAY, settings.zone)
        removed = await ledger.delete_most_recent(user.id, start, end)

        assert removed.content == "evening"
        assert [e.content for e in await ledger.query(user.id)] == ["morning"]

    @pytest.mark.asyncio
    async def test_nothing_in_range(self, ledger, make_user, local_time, settings):
        user = await make_user("alice")
        await ledger.append(user.id, 10, "old", created_at=local_time(DAY - timedelta(days=2)))

        start, end = day_bounds(DAY, settings.zone)

        assert await ledger.delete_most_recent(user.id, start, end) is None
        assert len(await ledger.query(user.id)) == 1


class TestListEntries:
    @pytest.mark.asyncio
    async def test_paginates_with_total(self, ledger, make_user, local_time):
        user = await make_user("alice")
        for minute in range(5):
            await ledger.append(user.id, 10, f"entry {minute}", created_at=local_time(DAY, 9, minute))

        page_one, total = await ledger.list_entries(page=1, page_size=2)
        page_three, _ = await ledger.list_entries(page=3, page_size=2)

        assert total == 5
        assert [e.content for e in page_one] == ["entry 4", "entry 3"]
        assert [e.content for e in page_three] == ["entry 0"]

    @pytest.mark.asyncio
    async def test_keyword_and_user_filters(self, ledger, make_user, local_time):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await ledger.append(alice.id, 10, "math homework", created_at=local_time(DAY, 8))
        await ledger.append(alice.id, 10, "piano", created_at=local_time(DAY, 9))
        await ledger.append(bob.id, 10, "math olympiad", created_at=local_time(DAY, 10))

        by_keyword, total = await ledger.list_entries(keyword="math")
        alice_math, alice_total = await ledger.list_entries(user_id=alice.id, keyword="math")

        assert total == 2
        assert {e.content for e in by_keyword} == {"math homework", "math olympiad"}
        assert alice_total == 1
        assert alice_math[0].content == "math homework"
