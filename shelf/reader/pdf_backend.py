"""Raster-paginated PDF books rendered with PyMuPDF."""

import asyncio
import logging
from dataclasses import dataclass

from .backend import Document, DocumentBackend, fetch_bytes, run_in_thread
from .errors import DocumentOpenError, RenderError
from .page_mapper import clamp_page
from .runtime import BookFormat

logger = logging.getLogger(__name__)


def _close_handle(handle) -> None:
    handle.close()


@dataclass
class RenderedPage:
    page_num: int
    png: bytes
    width: int
    height: int
    zoom: float


class PDFBackend(DocumentBackend):
    """Raster-paginated books rendered with PyMuPDF (`fitz`)."""

    format = BookFormat.PDF
    capabilities = frozenset({"raster", "text", "authoritative_pages"})

    @property
    def render_scale(self) -> float:
        return float(self.config.get("render_scale", 1.5))

    @property
    def base_font_px(self) -> int:
        return int(self.config.get("base_font_px", 16))

    async def open(self, url: str) -> Document:
        data = await fetch_bytes(url, timeout=float(self.config.get("fetch_timeout_s", 60.0)))
        try:
            handle = await run_in_thread(self.runtime.open, stream=data, filetype="pdf",
                                         on_abandon=_close_handle)
        except Exception as e:
            raise DocumentOpenError(f"Could not open PDF {url}: {e}") from e

        if handle.page_count < 1:
            handle.close()
            raise DocumentOpenError(f"PDF {url} has no pages")

        doc = Document(
            url=url,
            format=self.format,
            handle=handle,
            capabilities=self.capabilities,
            page_count=handle.page_count,
        )
        logger.info("Opened PDF %s (%d pages)", url, doc.page_count)
        return doc

    def get_page_count(self, doc: Document) -> int:
        return doc.page_count or 1

    def target_for(self, page: int, total: int) -> int:
        return clamp_page(page, total)[0]

    def zoom_for(self, doc: Document) -> float:
        return self.render_scale * doc.font_px / self.base_font_px

    async def _render(self, doc: Document, target: int) -> RenderedPage:
        return await asyncio.to_thread(self._rasterize, doc, int(target), self.zoom_for(doc))

    def _rasterize(self, doc: Document, page_num: int, zoom: float) -> RenderedPage:
        handle = doc.handle
        if handle is None:
            raise RenderError(f"Document {doc.url} is closed")
        page = handle.load_page(page_num - 1)
        pix = page.get_pixmap(matrix=self.runtime.Matrix(zoom, zoom))
        return RenderedPage(
            page_num=page_num,
            png=pix.tobytes("png"),
            width=pix.width,
            height=pix.height,
            zoom=zoom,
        )

    async def extract_text(self, doc: Document, position: int) -> str:
        handle = doc.handle
        if handle is None or not 1 <= position <= (doc.page_count or 0):
            return ""

        def _text() -> str:
            return handle.load_page(position - 1).get_text("text").strip()

        try:
            return await asyncio.to_thread(_text)
        except Exception as e:
            logger.warning("Text extraction failed for page %d of %s: %s", position, doc.url, e)
            return ""
