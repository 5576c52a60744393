"""Reflowable EPUB books, paginated through a location index.

EPUB has no pages. Chapter text is cut into fixed-size locations and a page
number is a fraction of the way through that index. Until the index exists
the backend reports a fixed fallback total and maps fractions onto chapters
proportionally, so navigation still works while the index is being built.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from .backend import Document, DocumentBackend, fetch_to_file, local_path, remove_file, run_in_thread
from .errors import DocumentOpenError, IndexingError
from .page_mapper import fraction_to_index, percentage_to_location_fraction
from .runtime import BookFormat

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_TOTAL = 100
DEFAULT_LOCATION_CHARS = 1024


@dataclass
class Chapter:
    href: str
    item_id: str
    content: bytes
    text: str | None = None   # filled lazily by chapter_text()


@dataclass
class Location:
    chapter: int
    start: int
    end: int


@dataclass
class EpubView:
    """What the reader shows for an EPUB position."""
    href: str
    chapter: int
    offset: int
    text: str
    fraction: float
    font_px: int
    indexed: bool = False
    chapter_fraction: float = 0.0   # position inside the chapter


def html_to_text(content: bytes) -> str:
    soup = BeautifulSoup(content, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(separator=" ", strip=True).split())


def split_locations(chapter: int, text: str, size: int) -> list[Location]:
    """Fixed-size locations over one chapter; empty chapters yield none."""
    size = max(1, size)
    return [
        Location(chapter=chapter, start=start, end=min(len(text), start + size))
        for start in range(0, len(text), size)
    ]


class EPUBBackend(DocumentBackend):
    """Location-indexed books read with ebooklib and BeautifulSoup."""

    format = BookFormat.EPUB
    capabilities = frozenset({"reflow", "text", "font_size", "locations"})

    @property
    def fallback_total(self) -> int:
        return max(1, int(self.config.get("fallback_total_pages", DEFAULT_FALLBACK_TOTAL)))

    @property
    def location_chars(self) -> int:
        return max(1, int(self.config.get("location_chars", DEFAULT_LOCATION_CHARS)))

    async def open(self, url: str) -> Document:
        path = await fetch_to_file(url, suffix=".epub",
                                   timeout=float(self.config.get("fetch_timeout_s", 60.0)))
        downloaded = local_path(url) is None
        kept = False
        try:
            try:
                book = await run_in_thread(self.runtime.read_epub, str(path))
                chapters = self._spine_chapters(book)
            except Exception as e:
                raise DocumentOpenError(f"Could not open EPUB {url}: {e}") from e
            if not chapters:
                raise DocumentOpenError(f"EPUB {url} has no readable chapters")
            kept = True
        finally:
            # also reached when the load is cancelled mid-open
            if downloaded and not kept:
                remove_file(path)

        doc = Document(url=url, format=self.format, handle=book, capabilities=self.capabilities)
        doc.extra["chapters"] = chapters
        doc.extra["locations"] = None
        if downloaded:
            doc.extra["temp_path"] = path
        logger.info("Opened EPUB %s (%d chapters)", url, len(chapters))
        return doc

    def _spine_chapters(self, book) -> list[Chapter]:
        chapters = []
        for entry in book.spine:
            item_id = entry[0] if isinstance(entry, (tuple, list)) else entry
            item = book.get_item_with_id(item_id)
            if item is None:
                continue
            chapters.append(Chapter(href=item.get_name(), item_id=item_id, content=item.get_content()))
        return chapters

    # ── Indexing ─────────────────────────────────────────────────────────

    async def prepare(self, doc: Document) -> None:
        """Build the location index. Cancelling the task stops between chapters."""
        chapters: list[Chapter] = doc.extra["chapters"]
        locations: list[Location] = []
        try:
            for i, chapter in enumerate(chapters):
                if doc.disposed:
                    raise asyncio.CancelledError()
                text = await asyncio.to_thread(self.chapter_text, chapter)
                locations.extend(split_locations(i, text, self.location_chars))
        except asyncio.CancelledError:
            logger.debug("Indexing of %s cancelled", doc.url)
            raise
        except Exception as e:
            raise IndexingError(f"Location index for {doc.url} failed: {e}") from e

        if not locations:
            raise IndexingError(f"{doc.url} contains no text to index")
        if doc.disposed:
            return
        doc.extra["locations"] = locations
        logger.info("Indexed %s: %d locations", doc.url, len(locations))

    def chapter_text(self, chapter: Chapter) -> str:
        if chapter.text is None:
            chapter.text = html_to_text(chapter.content)
        return chapter.text

    def get_page_count(self, doc: Document) -> int:
        locations = doc.extra.get("locations")
        if locations:
            return len(locations)
        return self.fallback_total

    # ── Display ──────────────────────────────────────────────────────────

    async def _render(self, doc: Document, target: float) -> EpubView:
        return await asyncio.to_thread(self._view_at, doc, float(target))

    def _view_at(self, doc: Document, fraction: float) -> EpubView:
        chapters: list[Chapter] = doc.extra["chapters"]
        locations: list[Location] | None = doc.extra.get("locations")
        fraction = min(1.0, max(0.0, fraction))

        if locations:
            loc = locations[fraction_to_index(fraction, len(locations))]
            text = self.chapter_text(chapters[loc.chapter])
            return EpubView(
                href=chapters[loc.chapter].href,
                chapter=loc.chapter,
                offset=loc.start,
                text=text[loc.start:loc.end],
                fraction=fraction,
                font_px=doc.font_px,
                indexed=True,
                chapter_fraction=loc.start / len(text) if text else 0.0,
            )

        # No index: spread the fraction evenly over the chapters
        scaled = fraction * len(chapters)
        idx = min(len(chapters) - 1, int(scaled))
        within = min(1.0, scaled - idx)
        text = self.chapter_text(chapters[idx])
        offset = min(len(text), int(within * len(text)))
        return EpubView(
            href=chapters[idx].href,
            chapter=idx,
            offset=offset,
            text=text[offset:offset + self.location_chars],
            fraction=fraction,
            font_px=doc.font_px,
            chapter_fraction=within,
        )

    async def extract_text(self, doc: Document, position: float) -> str:
        if doc.disposed:
            return ""
        try:
            view = await asyncio.to_thread(self._view_at, doc, float(position))
        except Exception as e:
            logger.warning("Text extraction failed at %.3f of %s: %s", position, doc.url, e)
            return ""
        return view.text

    def dispose(self, doc: Document) -> None:
        super().dispose(doc)
        temp_path: Path | None = doc.extra.pop("temp_path", None)
        if temp_path is not None:
            remove_file(temp_path)
