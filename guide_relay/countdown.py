from __future__ import annotations

# Countdown presenter.
#
# Purely derived: the remaining time is recomputed from `expires_at` on every
# tick, never counted down in place, so a suspended dashboard is correct the
# moment it wakes up.

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .models import RequestState, StatusRequest

EXPIRED_TEXT = "expired"


@dataclass(frozen=True)
class CountdownView:
    visible: bool
    state: RequestState | None = None
    text: str = ""
    urgent: bool = False
    completed_at: datetime | None = None


HIDDEN = CountdownView(visible=False)


def format_remaining(remaining: timedelta) -> str:
    """`mm:ss` of whole seconds left (fractions drop); minutes are not capped at 59."""
    total = int(remaining.total_seconds())
    if total <= 0:
        return EXPIRED_TEXT
    minutes, seconds = divmod(total, 60)
    return f"{minutes}:{seconds:02d}"


class CountdownPresenter:
    def __init__(
        self,
        *,
        completed_grace: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.completed_grace = completed_grace
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def render(self, request: StatusRequest | None, now: datetime | None = None) -> CountdownView:
        if request is None:
            return HIDDEN
        now = now or self.clock()

        if request.is_consumed:
            done = request.consumed_at
            if done is None or now - done > self.completed_grace:
                return HIDDEN
            return CountdownView(
                visible=True,
                state=RequestState.CONSUMED,
                text=f"done {done:%H:%M}",
                completed_at=done,
            )

        remaining = request.expires_at - now
        if remaining <= timedelta(0):
            if -remaining > self.completed_grace:
                return HIDDEN
            return CountdownView(visible=True, state=RequestState.EXPIRED, text=EXPIRED_TEXT)
        return CountdownView(visible=True, state=RequestState.ACTIVE, text=format_remaining(remaining), urgent=True)

    # -------------------- ticking --------------------

    def start(
        self,
        source: Callable[[], StatusRequest | None],
        on_render: Callable[[CountdownView], None],
        *,
        interval: float = 1.0,
    ) -> None:
        """Render `source()` every `interval` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, args=(source, on_render, interval), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=1.0)
        self._thread = None

    def _loop(self, source, on_render, interval: float) -> None:
        while not self._stop_event.is_set():
            on_render(self.render(source()))
            self._stop_event.wait(interval)
