"""Clients for the reading-progress store, in-process or over HTTP."""

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from ..reader.errors import ProgressWriteError
from .store import Book, ProgressRecord, ProgressStore, ProgressUpdate

logger = logging.getLogger(__name__)


class ProgressClient(ABC):
    """Abstract access to the catalog and the progress store."""

    @abstractmethod
    async def get_book(self, book_id: int) -> Book | None:
        ...

    @abstractmethod
    async def get_progress(self, user_id: int, book_id: int) -> ProgressRecord | None:
        ...

    @abstractmethod
    async def put_progress(self, user_id: int, book_id: int, update: ProgressUpdate) -> ProgressRecord:
        """Idempotent upsert. Raises ProgressWriteError when the store is unreachable."""
        ...

    async def close(self) -> None:
        return None


class StoreProgressClient(ProgressClient):
    """In-process client over the local SQLite store."""

    def __init__(self, store: ProgressStore):
        self.store = store

    async def get_book(self, book_id: int) -> Book | None:
        return await asyncio.to_thread(self.store.get_book, book_id)

    async def get_progress(self, user_id: int, book_id: int) -> ProgressRecord | None:
        return await asyncio.to_thread(self.store.get_progress, user_id, book_id)

    async def put_progress(self, user_id: int, book_id: int, update: ProgressUpdate) -> ProgressRecord:
        try:
            return await asyncio.to_thread(self.store.upsert_progress, user_id, book_id, update)
        except Exception as e:
            raise ProgressWriteError(f"Saving progress for book {book_id} failed: {e}") from e


class HttpProgressClient(ProgressClient):
    """Client for a remote shelf service (http://localhost:8000 by default)."""

    def __init__(self, endpoint: str = "http://localhost:8000", timeout: float = 10.0):
        self.endpoint = endpoint.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.endpoint, timeout=timeout)

    async def get_book(self, book_id: int) -> Book | None:
        resp = await self._client.get(f"/api/books/{book_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return Book(**resp.json())

    async def get_progress(self, user_id: int, book_id: int) -> ProgressRecord | None:
        resp = await self._client.get(f"/api/reading-progress/{book_id}", params={"user_id": user_id})
        resp.raise_for_status()
        data = resp.json()
        return ProgressRecord(**data) if data else None

    async def put_progress(self, user_id: int, book_id: int, update: ProgressUpdate) -> ProgressRecord:
        try:
            resp = await self._client.put(
                f"/api/reading-progress/{book_id}",
                params={"user_id": user_id},
                json=update.to_dict(),
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProgressWriteError(f"Saving progress for book {book_id} failed: {e}") from e
        return ProgressRecord(**resp.json())

    async def close(self) -> None:
        await self._client.aclose()
