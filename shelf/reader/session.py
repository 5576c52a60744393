"""One user reading one book, from opening to closing."""

import asyncio
import logging
import time
import uuid
from typing import Any

from ..progress.client import ProgressClient
from ..progress.store import Book
from ..progress.sync import ProgressSync
from .activity import DEFAULT_CONTROLS_TIMEOUT_S, ActivityGate
from .backend import DocumentBackend
from .controller import LoadState, SessionController
from .errors import ReaderError
from .runtime import BookFormat, RuntimeLoader

logger = logging.getLogger(__name__)


class ReadingSession:
    """One user reading one book: controller, progress sync and controls timer.

    The controller's page changes feed both ProgressSync and the ActivityGate;
    those two never see each other.
    """

    def __init__(
        self,
        user_id: int,
        book: Book,
        client: ProgressClient,
        config: dict | None = None,
        loader: RuntimeLoader | None = None,
        backends: dict[BookFormat, type[DocumentBackend]] | None = None,
        scheduler: Any = None,
    ):
        reader_cfg = (config or {}).get("reader", {})
        self.session_id = str(uuid.uuid4())
        self.started_at = time.time()
        self.user_id = user_id
        self.book = book
        self.format = BookFormat(book.file_type.lower())

        self.controller = SessionController(loader=loader, backends=backends, config=reader_cfg)
        self.sync = ProgressSync(
            client,
            user_id=user_id,
            book_id=book.id,
            declared_pages=book.pages,
            fallback_total=int(reader_cfg.get("fallback_total_pages", 100)),
        )
        self.gate = ActivityGate(
            timeout_s=float(reader_cfg.get("controls_timeout_s", DEFAULT_CONTROLS_TIMEOUT_S)),
            scheduler=scheduler,
        )

        self.controller.on_page_change(self.sync.on_page_change)
        self.controller.on_page_change(self.gate.page_changed)
        self.controller.on_state_change(self._on_state_change)

    def _on_state_change(self, state: LoadState, error: ReaderError | None) -> None:
        if state == LoadState.FAILED:
            logger.warning("Session %s: %s failed to load: %s", self.session_id, self.book.title, error)

    async def start(self) -> LoadState:
        """Hydrate progress and load the book concurrently; resume at the stored page."""

        async def _hydrate() -> None:
            position = await self.sync.hydrate()
            self.controller.restore(position.current_page)

        self.controller.select(self.book.file_url, self.format)
        self.gate.start()
        await asyncio.gather(_hydrate(), self.controller.open(self.book.file_url, self.format))
        logger.info("Session %s: %s is %s at page %d/%d", self.session_id, self.book.title,
                    self.controller.state.value, self.controller.position.current_page,
                    self.controller.position.total_pages)
        return self.controller.state

    # ── User actions ─────────────────────────────────────────────────────

    def go_to_page(self, page: int) -> asyncio.Task | None:
        return self.controller.go_to_page(page)

    def key_pressed(self, key: str) -> asyncio.Task | None:
        self.gate.key_pressed(key)
        return self.controller.handle_key(key)

    def pointer_moved(self) -> None:
        self.gate.pointer_moved()

    def set_font_size(self, px: int) -> int:
        return self.controller.set_font_size(px)

    async def reload(self) -> LoadState:
        return await self.controller.reload()

    async def extract_text(self) -> str:
        return await self.controller.extract_text()

    def snapshot(self) -> dict:
        position = self.controller.position
        error = self.controller.error
        return {
            "session_id": self.session_id,
            "book_id": self.book.id,
            "title": self.book.title,
            "format": self.format.value,
            "state": self.controller.state.value,
            "error": str(error) if error else None,
            "retry_count": self.controller.retry_count,
            "current_page": position.current_page,
            "total_pages": position.total_pages,
            "percentage": position.percentage,
            "font_px": self.controller.font_px,
            "controls_visible": self.gate.visible,
            "progress_saved": self.sync.last_error is None,
        }

    async def close(self) -> None:
        """Dispose the document and let queued progress writes finish."""
        self.controller.dispose()
        self.gate.close()
        await self.sync.flush()
        self.sync.close()
