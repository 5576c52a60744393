"""Load pipeline, state machine and page navigation for one open book."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .backend import Document, DocumentBackend
from .epub_backend import EPUBBackend
from .errors import DocumentOpenError, IndexingError, ReaderError, RenderError
from .page_mapper import clamp_page, page_to_percentage
from .pdf_backend import PDFBackend
from .runtime import BookFormat, RuntimeLoader, get_runtime_loader

logger = logging.getLogger(__name__)


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING_RUNTIME = "loading_runtime"
    LOADING_DOCUMENT = "loading_document"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Position:
    current_page: int = 1
    total_pages: int = 1
    percentage: int = 0

    @classmethod
    def at(cls, page: int, total: int) -> "Position":
        page, total = clamp_page(page, total)
        return cls(current_page=page, total_pages=total, percentage=page_to_percentage(page, total))


@dataclass(frozen=True)
class PageChangeEvent:
    current_page: int
    total_pages: int


PageListener = Callable[[PageChangeEvent], None]
StateListener = Callable[[LoadState, ReaderError | None], None]

BACKENDS: dict[BookFormat, type[DocumentBackend]] = {
    BookFormat.PDF: PDFBackend,
    BookFormat.EPUB: EPUBBackend,
}

KEY_ACTIONS = {
    "ArrowLeft": "prev",
    "PageUp": "prev",
    "ArrowRight": "next",
    "PageDown": "next",
    " ": "next",
    "Home": "first",
    "End": "last",
}


class SessionController:
    """Owns one Document and walks it through IDLE → … → READY or FAILED.

    Every load run gets a generation number; anything a superseded or
    disposed run produces after an await is dropped.
    """

    def __init__(
        self,
        loader: RuntimeLoader | None = None,
        backends: dict[BookFormat, type[DocumentBackend]] | None = None,
        config: dict | None = None,
    ):
        self.loader = loader or get_runtime_loader()
        self._backends = backends or BACKENDS
        self.config = config or {}

        self.url: str | None = None
        self.format: BookFormat | None = None
        self.state = LoadState.IDLE
        self.error: ReaderError | None = None
        self.retry_count = 0
        self.position = Position()
        self.font_px = self.clamp_font(int(self.config.get("default_font_px", 16)))

        self.backend: DocumentBackend | None = None
        self.document: Document | None = None

        self._generation = 0
        self._initial_page = 1
        self._load_task: asyncio.Task | None = None
        self._render_tasks: set[asyncio.Task] = set()
        self._page_listeners: list[PageListener] = []
        self._state_listeners: list[StateListener] = []

    # ── Listeners ────────────────────────────────────────────────────────

    def on_page_change(self, listener: PageListener) -> None:
        self._page_listeners.append(listener)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _emit_page(self) -> None:
        event = PageChangeEvent(self.position.current_page, self.position.total_pages)
        for listener in list(self._page_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Page-change listener failed: %s", e)

    def _set_state(self, state: LoadState, generation: int | None = None) -> None:
        if generation is not None and generation != self._generation:
            return
        if state == self.state:
            return
        logger.info("Load state %s → %s (%s)", self.state.value, state.value, self.url)
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state, self.error)
            except Exception as e:
                logger.error("Load-state listener failed: %s", e)

    # ── Loading ──────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self.state == LoadState.READY

    def select(self, url: str, fmt: BookFormat | str) -> BookFormat:
        """Point at `url` without loading it. A different book starts again at page 1."""
        fmt = BookFormat(fmt)
        if url != self.url or fmt != self.format:
            self.position = Position()
            self._initial_page = 1
        self.url, self.format = url, fmt
        return fmt

    async def open(self, url: str, fmt: BookFormat | str) -> LoadState:
        """Open `url` and wait for READY or FAILED. Fatal errors land in `self.error`."""
        self._teardown()
        self.select(url, fmt)
        self.error = None
        self._set_state(LoadState.IDLE)
        return await self._start()

    async def reload(self) -> LoadState:
        """Rebuild the backend from scratch, keeping the reader's page."""
        if self.url is None or self.format is None:
            return self.state
        self.retry_count += 1
        logger.info("Reload #%d requested for %s", self.retry_count, self.url)
        if self.is_ready:
            self._initial_page = self.position.current_page
        self._teardown()
        self.error = None
        self._set_state(LoadState.IDLE)
        return await self._start()

    async def _start(self) -> LoadState:
        self._generation += 1
        task = asyncio.ensure_future(self._load(self._generation))
        self._load_task = task
        await asyncio.wait([task])
        return self.state

    def _stale(self, generation: int) -> bool:
        return generation != self._generation

    async def _load(self, generation: int) -> None:
        url, fmt = self.url, self.format
        try:
            self._set_state(LoadState.LOADING_RUNTIME, generation)
            runtime = await self.loader.ensure_loaded(fmt)
            if self._stale(generation):
                return

            backend = self._backends[fmt](runtime, self.config)
            self._set_state(LoadState.LOADING_DOCUMENT, generation)
            doc = await backend.open(url)
            if self._stale(generation):
                backend.dispose(doc)
                return
            self.backend, self.document = backend, doc
            backend.set_font_size(doc, self.font_px)

            if doc.page_count is None:
                self._set_state(LoadState.INDEXING, generation)
                try:
                    await backend.prepare(doc)
                except IndexingError as e:
                    logger.warning("%s; keeping fallback total of %d pages",
                                   e, backend.get_page_count(doc))
                if self._stale(generation):
                    return

            total = backend.get_page_count(doc)
            self.position = Position.at(self._initial_page, total)
            self._set_state(LoadState.READY, generation)
            self._schedule_render()
        except asyncio.CancelledError:
            raise
        except ReaderError as e:
            self._fail(e, generation)
        except Exception as e:
            self._fail(DocumentOpenError(f"Could not open {url}: {e}"), generation)

    def _fail(self, error: ReaderError, generation: int) -> None:
        if self._stale(generation):
            return
        logger.error("Loading %s failed: %s", self.url, error)
        self.error = error
        if self.backend is not None and self.document is not None:
            self.backend.dispose(self.document)
        self.backend, self.document = None, None
        self._set_state(LoadState.FAILED, generation)

    # ── Navigation ───────────────────────────────────────────────────────

    def go_to_page(self, page: int, notify: bool = True) -> asyncio.Task | None:
        """Move to `page` and start rendering it. Out-of-range pages are ignored."""
        if not self.is_ready:
            return None
        if not 1 <= page <= self.position.total_pages:
            return None
        self.position = Position.at(page, self.position.total_pages)
        if notify:
            self._emit_page()
        return self._schedule_render()

    def next_page(self) -> asyncio.Task | None:
        return self.go_to_page(self.position.current_page + 1)

    def prev_page(self) -> asyncio.Task | None:
        return self.go_to_page(self.position.current_page - 1)

    def handle_key(self, key: str) -> asyncio.Task | None:
        action = KEY_ACTIONS.get(key)
        if action == "prev":
            return self.prev_page()
        if action == "next":
            return self.next_page()
        if action == "first":
            return self.go_to_page(1)
        if action == "last":
            return self.go_to_page(self.position.total_pages)
        return None

    def restore(self, page: int) -> None:
        """Start at `page` without emitting a page change (hydrated position)."""
        if self.is_ready:
            page, _ = clamp_page(page, self.position.total_pages)
            self.go_to_page(page, notify=False)
        else:
            self._initial_page = max(1, page)

    def _schedule_render(self) -> asyncio.Task | None:
        backend, doc = self.backend, self.document
        if backend is None or doc is None:
            return None
        target = backend.target_for(self.position.current_page, self.position.total_pages)
        task = asyncio.ensure_future(self._render(backend, doc, target))
        self._render_tasks.add(task)
        task.add_done_callback(self._render_tasks.discard)
        return task

    async def _render(self, backend: DocumentBackend, doc: Document, target) -> None:
        try:
            await backend.render_at(doc, target)
        except RenderError as e:
            logger.warning("%s; keeping the previous page on screen", e)

    async def wait_rendered(self) -> None:
        """Wait for renders in flight (used by the API and tests)."""
        if self._render_tasks:
            await asyncio.wait(list(self._render_tasks))

    async def extract_text(self) -> str:
        if not self.is_ready or self.backend is None or self.document is None:
            return ""
        target = self.backend.target_for(self.position.current_page, self.position.total_pages)
        return await self.backend.extract_text(self.document, target)

    # ── Font size ────────────────────────────────────────────────────────

    def clamp_font(self, px: int) -> int:
        lo = int(self.config.get("min_font_px", 12))
        hi = int(self.config.get("max_font_px", 24))
        return min(hi, max(lo, px))

    def set_font_size(self, px: int) -> int:
        """Apply now when READY; a later load or reload applies it on open."""
        self.font_px = self.clamp_font(px)
        if self.is_ready and self.backend is not None and self.document is not None:
            self.backend.set_font_size(self.document, self.font_px)
            self._schedule_render()
        return self.font_px

    # ── Teardown ─────────────────────────────────────────────────────────

    def _teardown(self) -> None:
        self._generation += 1
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None
        for task in list(self._render_tasks):
            task.cancel()
        self._render_tasks.clear()
        if self.backend is not None and self.document is not None:
            try:
                self.backend.dispose(self.document)
            except Exception as e:
                logger.warning("Disposing %s raised: %s", self.url, e)
        self.backend, self.document = None, None

    def dispose(self) -> None:
        """Release the document from any state. Never raises."""
        self._teardown()
        self.error = None
        self._set_state(LoadState.IDLE)
        logger.info("Disposed session for %s", self.url)
