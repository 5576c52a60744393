"""Capability interface shared by the PDF and EPUB document backends."""

import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, TypeVar
from urllib.parse import unquote, urlparse

import httpx

from .errors import DocumentOpenError, RenderError
from .runtime import BookFormat

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Document:
    """Handle to one opened book, owned by a single SessionController."""
    url: str
    format: BookFormat
    handle: Any = None
    capabilities: frozenset[str] = frozenset()
    page_count: int | None = None       # authoritative count, None until known
    font_px: int = 16
    displayed: Any = None               # last render that won the race
    render_generation: int = 0
    disposed: bool = False
    render_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    extra: dict = field(default_factory=dict)

    def next_generation(self) -> int:
        self.render_generation += 1
        return self.render_generation

    def is_current(self, generation: int) -> bool:
        return not self.disposed and generation == self.render_generation


class DocumentBackend(ABC):
    """One rendering library wrapped behind open/count/render/extract/dispose.

    Subclasses implement `_render`; `render_at` owns supersession: each call
    takes a new generation and a result is only displayed if no newer call
    was made and the document was not disposed in the meantime.
    """

    format: BookFormat
    capabilities: frozenset[str] = frozenset()

    def __init__(self, runtime: ModuleType, config: dict | None = None):
        self.runtime = runtime
        self.config = config or {}

    @abstractmethod
    async def open(self, url: str) -> Document:
        ...

    @abstractmethod
    def get_page_count(self, doc: Document) -> int:
        """Authoritative page count when known, otherwise a best-effort estimate."""
        ...

    @abstractmethod
    def target_for(self, page: int, total: int) -> Any:
        """Backend-specific display target for a page number."""
        ...

    @abstractmethod
    async def _render(self, doc: Document, target: Any) -> Any:
        ...

    async def extract_text(self, doc: Document, position: Any) -> str:
        return ""

    async def prepare(self, doc: Document) -> None:
        """Extra work between open and ready (location indexing for EPUB)."""
        return None

    def set_font_size(self, doc: Document, px: int) -> None:
        doc.font_px = px

    async def render_at(self, doc: Document, target: Any) -> bool:
        """Display `target`. Returns False when the result was discarded as stale."""
        if doc.disposed:
            return False
        generation = doc.next_generation()
        async with doc.render_lock:
            if not doc.is_current(generation):
                return False
            try:
                result = await self._render(doc, target)
            except asyncio.CancelledError:
                raise
            except RenderError:
                raise
            except Exception as e:
                raise RenderError(f"Rendering {target!r} failed: {e}") from e

        if not doc.is_current(generation):
            logger.debug("Discarding stale render of %r (generation %d)", target, generation)
            return False
        doc.displayed = result
        return True

    def dispose(self, doc: Document) -> None:
        """Release backend resources. Never raises."""
        doc.disposed = True
        doc.render_generation += 1
        handle, doc.handle = doc.handle, None
        if handle is None:
            return
        close = getattr(handle, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                logger.warning("Error closing %s document %s: %s", self.format.value, doc.url, e)


# ── Worker threads ───────────────────────────────────────────────────────────

async def run_in_thread(func: Callable[..., T], *args, on_abandon: Callable[[T], Any] | None = None,
                        **kwargs) -> T:
    """Run `func` in a worker thread.

    A cancelled caller cannot stop the thread. When it finishes anyway, its
    result is handed to `on_abandon` so handles and files get released.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        future.add_done_callback(lambda f: _release_abandoned(f, on_abandon))
        raise


def _release_abandoned(future: asyncio.Future, on_abandon: Callable[[Any], Any] | None) -> None:
    if future.cancelled() or future.exception() is not None or on_abandon is None:
        return
    try:
        on_abandon(future.result())
    except Exception as e:
        logger.warning("Releasing an abandoned result failed: %s", e)


def remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


# ── Fetching ─────────────────────────────────────────────────────────────────

def local_path(url: str) -> Path | None:
    """Filesystem path for `file://` URLs and bare paths, None for remote URLs."""
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        return None
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(url)


async def fetch_bytes(url: str, timeout: float = 60.0) -> bytes:
    """Read a book file from disk or over HTTP."""
    path = local_path(url)
    try:
        if path is not None:
            return await asyncio.to_thread(path.read_bytes)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except (OSError, httpx.HTTPError) as e:
        raise DocumentOpenError(f"Could not fetch {url}: {e}") from e


async def fetch_to_file(url: str, suffix: str, timeout: float = 60.0) -> Path:
    """Local path for `url`, downloading remote files to a temporary file."""
    path = local_path(url)
    if path is not None:
        if not path.exists():
            raise DocumentOpenError(f"File not found: {path}")
        return path

    data = await fetch_bytes(url, timeout=timeout)

    def _write() -> Path:
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as f:
            f.write(data)
            return Path(f.name)

    return await run_in_thread(_write, on_abandon=remove_file)
