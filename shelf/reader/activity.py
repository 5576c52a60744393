"""Controls visibility: shown on reader activity, hidden after a quiet period."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_CONTROLS_TIMEOUT_S = 5.0


class Visibility(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class ActivityKind(str, Enum):
    POINTER = "pointer"
    KEY = "key"
    PAGE = "page"


@dataclass(frozen=True)
class VisibilityState:
    visibility: Visibility
    hide_deadline: float | None   # scheduler time, None while hidden

    @property
    def visible(self) -> bool:
        return self.visibility == Visibility.VISIBLE


class ActivityGate:
    """Shows the on-screen reader controls on activity, hides them after a quiet spell.

    `scheduler` is anything with `time()` and `call_later(delay, callback)`;
    the running asyncio loop is used when none is given. There is at most one
    pending hide timer and every activity replaces it.
    """

    def __init__(self, timeout_s: float = DEFAULT_CONTROLS_TIMEOUT_S, scheduler: Any = None):
        self.timeout_s = timeout_s
        self._scheduler = scheduler
        self._visibility = Visibility.VISIBLE
        self._deadline: float | None = None
        self._timer = None
        self._listeners: list[Callable[[Visibility], None]] = []

    @property
    def scheduler(self):
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    @property
    def state(self) -> VisibilityState:
        return VisibilityState(self._visibility, self._deadline)

    @property
    def visible(self) -> bool:
        return self._visibility == Visibility.VISIBLE

    def on_change(self, listener: Callable[[Visibility], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        """Show the controls and arm the first hide timer."""
        self.record(ActivityKind.PAGE)

    # ── Activity ─────────────────────────────────────────────────────────

    def pointer_moved(self) -> None:
        self.record(ActivityKind.POINTER)

    def key_pressed(self, key: str = "") -> None:
        self.record(ActivityKind.KEY)

    def page_changed(self, _event: Any = None) -> None:
        self.record(ActivityKind.PAGE)

    def record(self, kind: ActivityKind) -> None:
        logger.debug("Activity: %s", kind.value)
        self._arm()
        self._set(Visibility.VISIBLE)

    # ── Timer ────────────────────────────────────────────────────────────

    def _arm(self) -> None:
        self._cancel_timer()
        self._deadline = self.scheduler.time() + self.timeout_s
        self._timer = self.scheduler.call_later(self.timeout_s, self._expire)

    def _expire(self) -> None:
        self._timer = None
        self._deadline = None
        self._set(Visibility.HIDDEN)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set(self, visibility: Visibility) -> None:
        if visibility == self._visibility:
            return
        self._visibility = visibility
        logger.debug("Reader controls %s", visibility.value)
        for listener in list(self._listeners):
            try:
                listener(visibility)
            except Exception as e:
                logger.error("Visibility listener failed: %s", e)

    def close(self) -> None:
        self._cancel_timer()
        self._deadline = None
