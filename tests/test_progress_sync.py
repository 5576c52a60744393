"""Tests for progress hydration and ordered persistence."""

import asyncio

import pytest

from shelf.progress.store import ProgressRecord
from shelf.progress.sync import ProgressSync
from shelf.reader.controller import PageChangeEvent, Position
from shelf.reader.page_mapper import page_to_percentage

pytestmark = pytest.mark.anyio

USER, BOOK = 7, 42


@pytest.fixture
def sync(progress_client):
    return ProgressSync(progress_client, user_id=USER, book_id=BOOK, fallback_total=100)


def page(n: int, total: int = 100) -> PageChangeEvent:
    return PageChangeEvent(current_page=n, total_pages=total)


class TestHydration:
    async def test_first_read_creates_default_record(self, sync, progress_client):
        position = await sync.hydrate()
        assert position == Position(current_page=1, total_pages=100, percentage=0)
        assert len(progress_client.puts) == 1
        stored = progress_client.records[(USER, BOOK)]
        assert stored.completed is False
        assert stored.total_pages == 100

    async def test_default_uses_declared_page_count(self, progress_client):
        sync = ProgressSync(progress_client, USER, BOOK, declared_pages=320)
        position = await sync.hydrate()
        assert position.total_pages == 320

    async def test_existing_record_is_restored(self, sync, progress_client):
        progress_client.records[(USER, BOOK)] = ProgressRecord(
            user_id=USER, book_id=BOOK, current_page=37, total_pages=100,
            percentage=37, completed=False, last_read_at="2024-05-01T10:00:00+00:00",
        )
        position = await sync.hydrate()
        assert position == Position(current_page=37, total_pages=100, percentage=37)
        assert progress_client.puts == []

    async def test_hydrating_twice_is_idempotent(self, sync, progress_client):
        first = await sync.hydrate()
        second = await sync.hydrate()
        assert first == second
        assert progress_client.reads == 2
        assert len(progress_client.puts) == 1

    async def test_unreachable_store_falls_back_to_default(self, sync, progress_client):
        progress_client.fail_reads = True
        position = await sync.hydrate()
        assert position.current_page == 1
        assert sync.hydrated

    async def test_writes_wait_for_hydration(self, sync, progress_client):
        progress_client.read_hold = asyncio.Event()
        hydrating = asyncio.ensure_future(sync.hydrate())
        await asyncio.sleep(0)

        sync.on_page_change(page(5))
        for _ in range(5):
            await asyncio.sleep(0)
        assert progress_client.puts == []

        progress_client.read_hold.set()
        await hydrating
        await sync.flush()

        assert [u.current_page for u in progress_client.puts] == [1, 5]
        assert progress_client.records[(USER, BOOK)].current_page == 5


class TestWrites:
    async def test_last_page_wins_when_first_write_is_slow(self, sync, progress_client):
        await sync.hydrate()
        progress_client.holds[11] = asyncio.Event()

        sync.on_page_change(page(11))
        await asyncio.sleep(0)
        sync.on_page_change(page(21))
        sync.on_page_change(page(31))
        await asyncio.sleep(0)
        progress_client.holds[11].set()
        await sync.flush()

        stored = progress_client.records[(USER, BOOK)]
        assert stored.current_page == 31
        assert stored.percentage == page_to_percentage(31, 100)
        # 21 was superseded while 11 was in flight
        assert [u.current_page for u in progress_client.puts[1:]] == [11, 31]

    async def test_completed_exactly_at_one_hundred(self, sync, progress_client):
        await sync.hydrate()
        sync.on_page_change(page(10, total=10))
        await sync.flush()
        assert progress_client.records[(USER, BOOK)].completed is True
        assert progress_client.records[(USER, BOOK)].percentage == 100

        sync.on_page_change(page(9, total=10))
        await sync.flush()
        assert progress_client.records[(USER, BOOK)].completed is False

    async def test_write_failure_is_retried_on_next_page(self, sync, progress_client):
        await sync.hydrate()
        progress_client.fail_next_puts = 1

        sync.on_page_change(page(5))
        await sync.flush()
        assert sync.last_error is not None
        assert progress_client.records[(USER, BOOK)].current_page == 1

        sync.on_page_change(page(6))
        await sync.flush()
        assert sync.last_error is None
        assert progress_client.records[(USER, BOOK)].current_page == 6

    async def test_close_drops_pending_writes(self, sync, progress_client):
        progress_client.read_hold = asyncio.Event()
        hydrating = asyncio.ensure_future(sync.hydrate())
        sync.on_page_change(page(8))
        sync.close()
        progress_client.read_hold.set()
        await hydrating
        await asyncio.sleep(0)
        assert all(u.current_page == 1 for u in progress_client.puts)
