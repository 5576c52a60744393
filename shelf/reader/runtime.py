"""Lazy, process-wide loading of the rendering library behind each book format."""

import asyncio
import importlib
import logging
from dataclasses import dataclass
from enum import Enum
from types import ModuleType
from typing import Callable

from .errors import RuntimeLoadError

logger = logging.getLogger(__name__)


class BookFormat(str, Enum):
    PDF = "pdf"     # raster-paginated
    EPUB = "epub"   # location-indexed


@dataclass(frozen=True)
class RuntimeSpec:
    module: str
    entry_point: str


RUNTIMES: dict[BookFormat, RuntimeSpec] = {
    BookFormat.PDF: RuntimeSpec(module="fitz", entry_point="open"),
    BookFormat.EPUB: RuntimeSpec(module="ebooklib.epub", entry_point="read_epub"),
}


class RuntimeLoader:
    """Imports each format's library at most once per process.

    Concurrent callers share one pending future, so a load in flight is never
    started twice. A failed load is not cached and the next call tries again.
    """

    def __init__(
        self,
        importer: Callable[[str], ModuleType] = importlib.import_module,
        max_attempts: int = 2,
        runtimes: dict[BookFormat, RuntimeSpec] | None = None,
    ):
        self._importer = importer
        self.max_attempts = max(1, max_attempts)
        self._runtimes = runtimes or RUNTIMES
        self._loaded: dict[BookFormat, ModuleType] = {}
        self._pending: dict[BookFormat, asyncio.Future] = {}

    def is_loaded(self, fmt: BookFormat) -> bool:
        return fmt in self._loaded

    async def ensure_loaded(self, fmt: BookFormat) -> ModuleType:
        """Return the runtime module for `fmt`, importing it on first use."""
        fmt = BookFormat(fmt)
        if fmt in self._loaded:
            return self._loaded[fmt]

        pending = self._pending.get(fmt)
        if pending is None:
            pending = asyncio.ensure_future(self._load(fmt))
            self._pending[fmt] = pending
        # shield: one cancelled waiter must not cancel the load for the others
        return await asyncio.shield(pending)

    async def _load(self, fmt: BookFormat) -> ModuleType:
        try:
            return await self._import_runtime(fmt)
        finally:
            self._pending.pop(fmt, None)

    async def _import_runtime(self, fmt: BookFormat) -> ModuleType:
        spec = self._runtimes.get(fmt)
        if spec is None:
            raise RuntimeLoadError(f"No rendering runtime registered for format '{fmt.value}'")

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                module = await asyncio.to_thread(self._importer, spec.module)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Loading %s runtime (%s) failed, attempt %d/%d: %s",
                    fmt.value, spec.module, attempt, self.max_attempts, e,
                )
                importlib.invalidate_caches()
                continue

            entry = getattr(module, spec.entry_point, None)
            if not callable(entry):
                last_error = None
                logger.warning("%s does not expose %s()", spec.module, spec.entry_point)
                break

            self._loaded[fmt] = module
            logger.info("Loaded %s runtime from %s", fmt.value, spec.module)
            return module

        if last_error is not None:
            raise RuntimeLoadError(
                f"Could not load the {fmt.value} reader ({spec.module}): {last_error}"
            ) from last_error
        raise RuntimeLoadError(f"{spec.module} has no callable '{spec.entry_point}'")

    def reset(self) -> None:
        """Forget loaded runtimes (tests only)."""
        self._loaded.clear()
        self._pending.clear()


# ── Process-wide instance ────────────────────────────────────────────────────

_loader: RuntimeLoader | None = None


def get_runtime_loader() -> RuntimeLoader:
    global _loader
    if _loader is None:
        _loader = RuntimeLoader()
    return _loader


def configure_runtime_loader(config: dict) -> RuntimeLoader:
    loader = get_runtime_loader()
    loader.max_attempts = max(1, int(config.get("runtime", {}).get("max_attempts", 2)))
    return loader
