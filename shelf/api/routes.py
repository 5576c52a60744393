"""HTTP routes for the catalog, reading progress and the active reader session."""

import logging
from pathlib import Path

import yaml
from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel

from ..progress.client import HttpProgressClient, ProgressClient, StoreProgressClient
from ..progress.store import ProgressStore, ProgressUpdate, utc_now
from ..reader.controller import LoadState
from ..reader.pdf_backend import RenderedPage
from ..reader.runtime import configure_runtime_loader
from ..reader.session import ReadingSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# ── Global state (one active reading session) ────────────────────────────────

_config: dict = {}
_store: ProgressStore | None = None
_client: ProgressClient | None = None
_session: ReadingSession | None = None


def load_config(config_path: str = "config.yaml") -> dict:
    global _config
    path = Path(config_path)
    if path.exists():
        with open(path, "r") as f:
            _config = yaml.safe_load(f) or {}
    else:
        _config = {}
    return _config


def init_store(config: dict) -> ProgressStore:
    """Open the local store, seed the catalog and pick the progress client."""
    global _store, _client
    data_dir = config.get("storage", {}).get("data_dir", "data")
    _store = ProgressStore(db_path=f"{data_dir}/shelf.db")
    seeded = _store.seed_books(config.get("books", []) or [])

    endpoint = config.get("progress", {}).get("endpoint", "")
    if endpoint:
        _client = HttpProgressClient(endpoint=endpoint)
        logger.info("Progress store: remote %s", endpoint)
    else:
        _client = StoreProgressClient(_store)
        logger.info("Progress store: local (%d books in catalog)", seeded)

    configure_runtime_loader(config)
    return _store


async def shutdown() -> None:
    global _session
    if _session is not None:
        await _session.close()
        _session = None
    if _client is not None:
        await _client.close()
    if _store is not None:
        _store.close()


def _require_store() -> ProgressStore:
    if _store is None:
        raise HTTPException(503, "Store not initialized.")
    return _store


def _require_session() -> ReadingSession:
    if _session is None:
        raise HTTPException(400, "No book open.")
    return _session


# ── Request/Response models ────────────────────────────────────────────────

class BookInfo(BaseModel):
    id: int
    title: str
    author: str = ""
    file_url: str
    file_type: str
    pages: int | None = None

class ProgressBody(BaseModel):
    current_page: int
    total_pages: int
    percentage: int
    completed: bool = False
    last_read_at: str | None = None

class ProgressInfo(BaseModel):
    id: int | None = None
    user_id: int
    book_id: int
    current_page: int
    total_pages: int
    percentage: int
    completed: bool
    last_read_at: str

class OpenRequest(BaseModel):
    user_id: int
    book_id: int

class KeyRequest(BaseModel):
    key: str

class FontSizeRequest(BaseModel):
    px: int

class ReaderState(BaseModel):
    session_id: str
    book_id: int
    title: str
    format: str
    state: str
    error: str | None = None
    retry_count: int
    current_page: int
    total_pages: int
    percentage: int
    font_px: int
    controls_visible: bool
    progress_saved: bool


# ── Catalog & progress ─────────────────────────────────────────────────────

@router.get("/books/{book_id}")
async def get_book(book_id: int) -> BookInfo:
    book = _require_store().get_book(book_id)
    if book is None:
        raise HTTPException(404, "Book not found.")
    return BookInfo(**book.__dict__)


@router.get("/reading-progress")
async def list_progress(user_id: int) -> list[ProgressInfo]:
    return [ProgressInfo(**r.to_dict()) for r in _require_store().list_progress(user_id)]


@router.get("/reading-progress/{book_id}")
async def get_progress(book_id: int, user_id: int) -> ProgressInfo | None:
    record = _require_store().get_progress(user_id, book_id)
    return ProgressInfo(**record.to_dict()) if record else None


@router.put("/reading-progress/{book_id}")
async def put_progress(book_id: int, user_id: int, body: ProgressBody) -> ProgressInfo:
    if body.total_pages < 1 or not 1 <= body.current_page <= body.total_pages:
        raise HTTPException(422, "current_page must lie in [1, total_pages].")
    update = ProgressUpdate(
        current_page=body.current_page,
        total_pages=body.total_pages,
        percentage=min(100, max(0, body.percentage)),
        completed=body.completed,
        last_read_at=body.last_read_at or utc_now(),
    )
    record = _require_store().upsert_progress(user_id, book_id, update)
    return ProgressInfo(**record.to_dict())


# ── Reader session ─────────────────────────────────────────────────────────

@router.post("/reader/open")
async def open_book(req: OpenRequest) -> ReaderState:
    global _session
    if _client is None:
        raise HTTPException(503, "Store not initialized.")

    try:
        book = await _client.get_book(req.book_id)
    except Exception as e:
        logger.error("Catalog lookup for book %d failed: %s", req.book_id, e)
        raise HTTPException(502, f"Catalog error: {e}")
    if book is None:
        raise HTTPException(404, "Book not found.")
    if book.file_type.lower() not in ("pdf", "epub"):
        raise HTTPException(400, f"Unsupported file type '{book.file_type}'.")

    if _session is not None:
        await _session.close()
    _session = ReadingSession(user_id=req.user_id, book=book, client=_client, config=_config)
    await _session.start()
    return ReaderState(**_session.snapshot())


@router.get("/reader/state")
async def reader_state() -> ReaderState:
    return ReaderState(**_require_session().snapshot())


@router.post("/reader/page/{page_num}")
async def go_to_page(page_num: int) -> ReaderState:
    session = _require_session()
    if session.controller.state != LoadState.READY:
        raise HTTPException(409, "Book is not ready.")
    if session.go_to_page(page_num) is None:
        raise HTTPException(404, "Page not found.")
    return ReaderState(**session.snapshot())


@router.post("/reader/key")
async def key_pressed(req: KeyRequest) -> ReaderState:
    session = _require_session()
    session.key_pressed(req.key)
    return ReaderState(**session.snapshot())


@router.post("/reader/activity")
async def pointer_activity() -> dict:
    session = _require_session()
    session.pointer_moved()
    return {"controls_visible": session.gate.visible}


@router.post("/reader/reload")
async def reload_book() -> ReaderState:
    session = _require_session()
    await session.reload()
    return ReaderState(**session.snapshot())


@router.post("/reader/font-size")
async def set_font_size(req: FontSizeRequest) -> ReaderState:
    session = _require_session()
    session.set_font_size(req.px)
    return ReaderState(**session.snapshot())


@router.get("/reader/text")
async def page_text() -> dict:
    session = _require_session()
    return {"page": session.controller.position.current_page, "text": await session.extract_text()}


@router.get("/reader/image")
async def page_image() -> Response:
    session = _require_session()
    await session.controller.wait_rendered()
    doc = session.controller.document
    rendered = doc.displayed if doc else None
    if not isinstance(rendered, RenderedPage):
        raise HTTPException(404, "No rendered page image.")
    return Response(content=rendered.png, media_type="image/png")


@router.delete("/reader")
async def close_book() -> dict:
    global _session
    if _session is not None:
        await _session.close()
        _session = None
    return {"status": "ok"}


@router.post("/reader/flush")
async def flush_progress() -> dict:
    session = _require_session()
    await session.sync.flush()
    if session.sync.last_error is not None:
        raise HTTPException(502, f"Progress store error: {session.sync.last_error}")
    return {"status": "ok", "writes": session.sync.writes}


@router.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "store_ready": _store is not None,
        "session_active": _session is not None,
        "reader_state": _session.controller.state.value if _session else None,
    }
