"""Shared fakes: a manual clock, controllable backends and an in-memory progress store."""

import asyncio
import heapq
import itertools
from types import SimpleNamespace

import pytest

from shelf.progress.client import ProgressClient
from shelf.progress.store import Book, ProgressRecord, ProgressUpdate
from shelf.reader.backend import Document, DocumentBackend
from shelf.reader.errors import IndexingError, ProgressWriteError, RenderError
from shelf.reader.page_mapper import clamp_page, percentage_to_location_fraction
from shelf.reader.runtime import BookFormat, RuntimeLoader


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ── Manual clock ─────────────────────────────────────────────────────────────

class FakeTimer:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Stands in for the event loop's time()/call_later() with a manual clock."""

    def __init__(self):
        self.now = 0.0
        self._queue = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay, callback):
        timer = FakeTimer()
        heapq.heappush(self._queue, (self.now + delay, next(self._seq), timer, callback))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t, _ in self._queue if not t.cancelled)

    def advance_to(self, when: float) -> None:
        while self._queue and self._queue[0][0] <= when:
            due, _, timer, callback = heapq.heappop(self._queue)
            self.now = due
            if not timer.cancelled:
                callback()
        self.now = when


@pytest.fixture
def scheduler():
    return FakeScheduler()


# ── Runtime loader ───────────────────────────────────────────────────────────

FAKE_RUNTIME = SimpleNamespace(open=lambda *a, **k: None, read_epub=lambda *a, **k: None)


class CountingImporter:
    def __init__(self, fail_times: int = 0):
        self.calls: list[str] = []
        self.fail_times = fail_times

    def __call__(self, name: str):
        self.calls.append(name)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ImportError(f"no module named {name}")
        return FAKE_RUNTIME


@pytest.fixture
def importer():
    return CountingImporter()


@pytest.fixture
def make_importer():
    return CountingImporter


@pytest.fixture
def loader(importer):
    return RuntimeLoader(importer=importer, max_attempts=1)


# ── Backends ─────────────────────────────────────────────────────────────────

class GatedRenders:
    """Lets a test decide when each render finishes (and in which order)."""

    def __init__(self):
        self.gated = False
        self.started: list = []
        self._events: dict = {}

    def event(self, target) -> asyncio.Event:
        return self._events.setdefault(target, asyncio.Event())

    def release(self, target) -> None:
        self.event(target).set()

    async def wait(self, target) -> None:
        self.started.append(target)
        if self.gated:
            await self.event(target).wait()


class FakeRasterBackend(DocumentBackend):
    """Raster-paginated fake: page count is known as soon as the book opens."""

    format = BookFormat.PDF
    pages = 10
    gate = GatedRenders()
    open_error: Exception | None = None
    open_hold: asyncio.Event | None = None
    render_error_pages: set = set()
    opened: list = []
    font_sizes: list = []

    async def open(self, url: str) -> Document:
        type(self).opened.append(url)
        if self.open_hold is not None:
            await self.open_hold.wait()
        if self.open_error is not None:
            raise self.open_error
        return Document(url=url, format=self.format, handle=object(), page_count=self.pages)

    def get_page_count(self, doc: Document) -> int:
        return doc.page_count

    def target_for(self, page: int, total: int) -> int:
        return clamp_page(page, total)[0]

    def set_font_size(self, doc: Document, px: int) -> None:
        super().set_font_size(doc, px)
        type(self).font_sizes.append(px)

    async def _render(self, doc: Document, target: int):
        await self.gate.wait(target)
        if target in self.render_error_pages:
            raise RenderError(f"page {target} is damaged")
        return target


class FakeLocationBackend(DocumentBackend):
    """Location-indexed fake: fallback total until prepare() indexes the book."""

    format = BookFormat.EPUB
    indexed_total: int | None = 412
    index_hold: asyncio.Event | None = None

    def __init__(self, runtime, config=None):
        super().__init__(runtime, config)
        self.fallback_total = int(self.config.get("fallback_total_pages", 100))

    async def open(self, url: str) -> Document:
        doc = Document(url=url, format=self.format, handle=object())
        doc.extra["locations"] = None
        return doc

    async def prepare(self, doc: Document) -> None:
        if self.index_hold is not None:
            await self.index_hold.wait()
        if self.indexed_total is None:
            raise IndexingError("locations could not be generated")
        doc.extra["locations"] = self.indexed_total

    def get_page_count(self, doc: Document) -> int:
        return doc.extra.get("locations") or self.fallback_total

    def target_for(self, page: int, total: int) -> float:
        return percentage_to_location_fraction(page, total)

    async def _render(self, doc: Document, target: float):
        return target


@pytest.fixture
def raster_backend():
    FakeRasterBackend.pages = 10
    FakeRasterBackend.gate = GatedRenders()
    FakeRasterBackend.open_error = None
    FakeRasterBackend.open_hold = None
    FakeRasterBackend.render_error_pages = set()
    FakeRasterBackend.opened = []
    FakeRasterBackend.font_sizes = []
    return FakeRasterBackend


@pytest.fixture
def location_backend():
    FakeLocationBackend.indexed_total = 412
    FakeLocationBackend.index_hold = None
    return FakeLocationBackend


@pytest.fixture
def backends(raster_backend, location_backend):
    return {BookFormat.PDF: raster_backend, BookFormat.EPUB: location_backend}


# ── Progress store ───────────────────────────────────────────────────────────

class MemoryProgressClient(ProgressClient):
    """In-memory progress store.

    `holds` keeps a write for a page in flight until set; `eager_reads` answers
    reads without yielding to the loop.
    """

    def __init__(self, books: list[Book] | None = None):
        self.books = {b.id: b for b in books or []}
        self.records: dict[tuple[int, int], ProgressRecord] = {}
        self.reads = 0
        self.puts: list[ProgressUpdate] = []
        self.holds: dict[int, asyncio.Event] = {}
        self.fail_next_puts = 0
        self.fail_reads = False
        self.read_hold: asyncio.Event | None = None
        self.eager_reads = False

    async def get_book(self, book_id: int) -> Book | None:
        return self.books.get(book_id)

    async def get_progress(self, user_id: int, book_id: int) -> ProgressRecord | None:
        self.reads += 1
        if self.read_hold is not None:
            await self.read_hold.wait()
        if not self.eager_reads:
            await asyncio.sleep(0)
        if self.fail_reads:
            raise ConnectionError("progress store unreachable")
        return self.records.get((user_id, book_id))

    async def put_progress(self, user_id: int, book_id: int, update: ProgressUpdate) -> ProgressRecord:
        self.puts.append(update)
        hold = self.holds.get(update.current_page)
        if hold is not None:
            await hold.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_next_puts > 0:
            self.fail_next_puts -= 1
            raise ProgressWriteError("503 Service Unavailable")
        record = ProgressRecord(
            user_id=user_id,
            book_id=book_id,
            current_page=update.current_page,
            total_pages=update.total_pages,
            percentage=update.percentage,
            completed=update.completed,
            last_read_at=update.last_read_at,
            id=1,
        )
        self.records[(user_id, book_id)] = record
        return record


@pytest.fixture
def progress_client():
    return MemoryProgressClient()
