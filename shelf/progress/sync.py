"""Hydrate a reading position from the progress store and keep the store current."""

import asyncio
import logging

from ..reader.controller import PageChangeEvent, Position
from ..reader.errors import ProgressWriteError
from ..reader.page_mapper import page_to_percentage
from .client import ProgressClient
from .store import ProgressRecord, ProgressUpdate, utc_now

logger = logging.getLogger(__name__)


class ProgressSync:
    """Persists page changes for one (user, book).

    Writes go through a single writer task so they reach the store in the
    order the pages were turned. While a write is in flight, newer changes
    collapse into one pending update; only the latest page is ever sent next.
    Nothing is written before hydration has finished.
    """

    def __init__(
        self,
        client: ProgressClient,
        user_id: int,
        book_id: int,
        declared_pages: int | None = None,
        fallback_total: int = 100,
    ):
        self.client = client
        self.user_id = user_id
        self.book_id = book_id
        self.default_total = max(1, declared_pages or fallback_total)

        self.record: ProgressRecord | None = None
        self.last_error: ProgressWriteError | None = None
        self.writes = 0
        self._hydrated = asyncio.Event()
        self._pending: ProgressUpdate | None = None
        self._writer: asyncio.Task | None = None

    # ── Hydration ────────────────────────────────────────────────────────

    def default_update(self) -> ProgressUpdate:
        return ProgressUpdate(
            current_page=1,
            total_pages=self.default_total,
            percentage=0,
            completed=False,
            last_read_at=utc_now(),
        )

    async def hydrate(self) -> Position:
        """Read the stored position, creating a default record for a first read.

        Failures fall back to the default position; hydration always
        completes so queued writes can proceed.
        """
        try:
            record = await self.client.get_progress(self.user_id, self.book_id)
            if record is None:
                logger.info("No progress for user %s book %s, creating default",
                            self.user_id, self.book_id)
                record = await self.client.put_progress(self.user_id, self.book_id, self.default_update())
            self.record = record
        except Exception as e:
            logger.warning("Hydrating progress for book %s failed, starting at page 1: %s",
                           self.book_id, e)
        finally:
            self._hydrated.set()
        return self.position

    @property
    def hydrated(self) -> bool:
        return self._hydrated.is_set()

    @property
    def position(self) -> Position:
        record = self.record
        if record is None:
            return Position(current_page=1, total_pages=self.default_total, percentage=0)
        total = max(1, record.total_pages)
        return Position(
            current_page=min(max(1, record.current_page), total),
            total_pages=total,
            percentage=min(100, max(0, record.percentage)),
        )

    # ── Writes ───────────────────────────────────────────────────────────

    def on_page_change(self, event: PageChangeEvent) -> None:
        """Queue a write for the new page (listener for SessionController)."""
        percentage = page_to_percentage(event.current_page, event.total_pages)
        self._pending = ProgressUpdate(
            current_page=event.current_page,
            total_pages=event.total_pages,
            percentage=percentage,
            completed=percentage == 100,
            last_read_at=utc_now(),
        )
        if self._writer is None or self._writer.done():
            self._writer = asyncio.ensure_future(self._drain())

    async def _drain(self) -> None:
        await self._hydrated.wait()
        while self._pending is not None:
            update, self._pending = self._pending, None
            try:
                self.record = await self.client.put_progress(self.user_id, self.book_id, update)
                self.writes += 1
                self.last_error = None
            except Exception as e:
                # the next page change carries the newest position and retries
                self.last_error = e if isinstance(e, ProgressWriteError) else ProgressWriteError(str(e))
                logger.warning("Saving progress (page %d) failed: %s", update.current_page, e)

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        while self._writer is not None and not self._writer.done():
            await asyncio.wait([self._writer])

    def close(self) -> None:
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._writer = None
        self._pending = None
