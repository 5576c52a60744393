"""SQLite-backed book catalog and reading-progress records."""

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Book:
    id: int
    title: str
    file_url: str
    file_type: str          # "pdf" or "epub"
    pages: int | None = None
    author: str = ""


@dataclass
class ProgressUpdate:
    current_page: int
    total_pages: int
    percentage: int
    completed: bool = False
    last_read_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProgressRecord:
    user_id: int
    book_id: int
    current_page: int
    total_pages: int
    percentage: int
    completed: bool
    last_read_at: str
    id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressStore:
    """Books and one progress record per (user, book), persisted in SQLite."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS books (
        id          INTEGER PRIMARY KEY,
        title       TEXT NOT NULL,
        author      TEXT DEFAULT '',
        file_url    TEXT NOT NULL,
        file_type   TEXT NOT NULL,
        pages       INTEGER
    );

    CREATE TABLE IF NOT EXISTS reading_progress (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id       INTEGER NOT NULL,
        book_id       INTEGER NOT NULL,
        current_page  INTEGER NOT NULL DEFAULT 1,
        total_pages   INTEGER NOT NULL,
        percentage    INTEGER NOT NULL DEFAULT 0,
        completed     INTEGER NOT NULL DEFAULT 0,
        last_read_at  TEXT NOT NULL,
        UNIQUE (user_id, book_id)
    );

    CREATE INDEX IF NOT EXISTS idx_progress_user ON reading_progress(user_id);
    """

    def __init__(self, db_path: str | Path = "data/shelf.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(self.SCHEMA)
        self._conn.commit()
        logger.info("Progress store opened: %s", self.db_path)

    def close(self) -> None:
        self._conn.close()

    # ── Books ────────────────────────────────────────────────────────────

    def add_book(self, book: Book) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO books (id, title, author, file_url, file_type, pages) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (book.id, book.title, book.author, book.file_url, book.file_type, book.pages),
            )
            self._conn.commit()

    def seed_books(self, books: list[dict]) -> int:
        """Load catalog entries from configuration; returns how many were stored."""
        count = 0
        for entry in books:
            try:
                book = Book(
                    id=int(entry["id"]),
                    title=entry.get("title", ""),
                    author=entry.get("author", ""),
                    file_url=entry["file_url"],
                    file_type=str(entry.get("file_type", "pdf")).lower(),
                    pages=entry.get("pages"),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed book entry %r: %s", entry, e)
                continue
            self.add_book(book)
            count += 1
        return count

    def get_book(self, book_id: int) -> Book | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            return None
        return Book(id=row["id"], title=row["title"], author=row["author"] or "",
                    file_url=row["file_url"], file_type=row["file_type"], pages=row["pages"])

    # ── Progress ─────────────────────────────────────────────────────────

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ProgressRecord:
        return ProgressRecord(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            current_page=row["current_page"],
            total_pages=row["total_pages"],
            percentage=row["percentage"],
            completed=bool(row["completed"]),
            last_read_at=row["last_read_at"],
        )

    def get_progress(self, user_id: int, book_id: int) -> ProgressRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM reading_progress WHERE user_id = ? AND book_id = ?",
                (user_id, book_id),
            ).fetchone()
        return self._to_record(row) if row else None

    def list_progress(self, user_id: int) -> list[ProgressRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM reading_progress WHERE user_id = ? ORDER BY last_read_at DESC",
                (user_id,),
            ).fetchall()
        return [self._to_record(r) for r in rows]

    def upsert_progress(self, user_id: int, book_id: int, update: ProgressUpdate) -> ProgressRecord:
        """Create the record on first write, replace its fields afterwards."""
        last_read_at = update.last_read_at or utc_now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reading_progress
                    (user_id, book_id, current_page, total_pages, percentage, completed, last_read_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, book_id) DO UPDATE SET
                    current_page = excluded.current_page,
                    total_pages  = excluded.total_pages,
                    percentage   = excluded.percentage,
                    completed    = excluded.completed,
                    last_read_at = excluded.last_read_at
                """,
                (user_id, book_id, update.current_page, update.total_pages,
                 update.percentage, int(update.completed), last_read_at),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM reading_progress WHERE user_id = ? AND book_id = ?",
                (user_id, book_id),
            ).fetchone()
        return self._to_record(row)
