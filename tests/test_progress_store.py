"""Tests for the SQLite catalog and progress store."""

import os
import tempfile

import pytest

from shelf.progress.store import Book, ProgressStore, ProgressUpdate


@pytest.fixture
def store():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    s = ProgressStore(db_path=path)
    yield s
    s.close()
    os.unlink(path)


def update(page: int, total: int = 10, pct: int = 0, completed: bool = False) -> ProgressUpdate:
    return ProgressUpdate(current_page=page, total_pages=total, percentage=pct,
                          completed=completed, last_read_at="2024-06-01T09:00:00+00:00")


class TestBooks:
    def test_add_and_get(self, store):
        store.add_book(Book(id=1, title="Dune", file_url="books/dune.epub", file_type="epub"))
        book = store.get_book(1)
        assert book.title == "Dune"
        assert book.pages is None
        assert store.get_book(2) is None

    def test_seed_skips_malformed_entries(self, store):
        count = store.seed_books([
            {"id": 1, "title": "A", "file_url": "a.pdf", "file_type": "PDF", "pages": 12},
            {"title": "no id", "file_url": "b.pdf"},
            {"id": 3, "title": "C", "file_url": "c.epub", "file_type": "epub"},
        ])
        assert count == 2
        assert store.get_book(1).file_type == "pdf"
        assert store.get_book(1).pages == 12


class TestProgress:
    def test_missing_record(self, store):
        assert store.get_progress(1, 1) is None

    def test_upsert_creates_then_updates(self, store):
        created = store.upsert_progress(1, 5, update(1))
        updated = store.upsert_progress(1, 5, update(10, pct=100, completed=True))

        assert created.id == updated.id
        assert updated.current_page == 10
        assert updated.completed is True
        assert store.get_progress(1, 5) == updated

    def test_upsert_is_idempotent(self, store):
        first = store.upsert_progress(1, 5, update(4, pct=34))
        second = store.upsert_progress(1, 5, update(4, pct=34))
        assert first == second

    def test_records_are_per_user_and_book(self, store):
        store.upsert_progress(1, 5, update(2))
        store.upsert_progress(2, 5, update(3))
        store.upsert_progress(1, 6, update(4))
        assert store.get_progress(2, 5).current_page == 3
        assert len(store.list_progress(1)) == 2

    def test_last_read_at_defaults_to_now(self, store):
        record = store.upsert_progress(1, 1, ProgressUpdate(current_page=1, total_pages=1, percentage=0))
        assert record.last_read_at
