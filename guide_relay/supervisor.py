from __future__ import annotations

# Foreground connection supervisor.
#
# Owns one topic subscription for a dashboard view and keeps it healthy:
#
#   DISCONNECTED -> CONNECTING -> CONNECTED -> {DISCONNECTED, STALE}
#                -> RECONNECTING -> CONNECTED
#
# Every trigger (view visible again, focus regained, navigation back into the
# view, worker heartbeat missing, broker link restored) funnels into
# `rebuild()`. A rebuild tears the handle down, purges strays, waits a short
# settle delay, resubscribes and refetches the full state.
#
# Rebuilds coalesce: a non-blocking guard drops triggers that arrive while one
# is running, and a debounce window drops triggers that follow one closely.
# Every rebuild bumps `generation`; events and refetch results carrying an
# older generation are discarded.
#
# Channel callbacks arrive on the transport's network thread, and a refetch is
# a blocking request answered on that same thread. Once started with a
# monitor, the supervisor runs triggers, events and liveness checks on its own
# thread; `submit()` is how outside callers (signal handlers, MQTT message
# handlers) hand work to it.

import enum
import logging
import queue
import threading
import time
from typing import Any, Callable

from .channel import EventDeduper, NotificationChannel, Subscription
from .config import RelayConfig
from .errors import RelayError, SubscriptionLost
from .store import ChangeEvent

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    RECONNECTING = "reconnecting"


class SubscriptionRegistry:
    """Topic-keyed registry: at most one live handle per topic.

    `replace()` closes whatever the topic had (including handles created
    behind the registry's back) before it subscribes again.
    """

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel
        self._handles: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def current(self, topic: str) -> Subscription | None:
        with self._lock:
            return self._handles.get(topic)

    def release(self, topic: str) -> None:
        with self._lock:
            handle = self._handles.pop(topic, None)
        if handle is not None:
            self.channel.unsubscribe(handle)
        for stray in self.channel.subscriptions(topic):
            logger.debug("purging stray handle %s on %s", stray.handle_id, topic)
            self.channel.unsubscribe(stray)

    def claim(self, topic: str, on_event: Callable[[ChangeEvent], None]) -> Subscription:
        with self._lock:
            if topic in self._handles:
                raise RuntimeError(f"topic {topic} already has a live handle")
            handle = self.channel.subscribe(topic, on_event)
            self._handles[topic] = handle
            return handle

    def replace(self, topic: str, on_event: Callable[[ChangeEvent], None]) -> Subscription:
        self.release(topic)
        return self.claim(topic, on_event)


class ConnectionSupervisor:
    def __init__(
        self,
        channel: NotificationChannel,
        topic: str,
        *,
        refetch: Callable[[], Any],
        on_snapshot: Callable[[Any], None],
        on_event: Callable[[ChangeEvent], None] | None = None,
        registry: SubscriptionRegistry | None = None,
        config: RelayConfig | None = None,
        dependent_view: str | None = None,
        on_state: Callable[[ConnectionState], None] | None = None,
        on_stale: Callable[[], None] | None = None,
        on_error: Callable[[RelayError], None] | None = None,
        max_silent_failures: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channel = channel
        self.topic = topic
        self.refetch = refetch
        self.on_snapshot = on_snapshot
        self.on_event = on_event
        self.registry = registry or SubscriptionRegistry(channel)
        self.config = config or RelayConfig()
        self.dependent_view = dependent_view
        self.on_state = on_state
        self.on_stale = on_stale
        self.on_error = on_error
        self.max_silent_failures = max_silent_failures
        self.clock = clock
        self.sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.generation = 0
        self.rebuild_count = 0
        self.failures = 0
        self.last_heartbeat: float | None = None
        self._last_rebuild_at: float | None = None
        self._guard = threading.Lock()
        self._dedup = EventDeduper()

        self._stop_event = threading.Event()
        self._monitor: threading.Thread | None = None
        self._tasks: queue.Queue = queue.Queue()

        channel.add_status_listener(self._on_channel_status)

    # -------------------- lifecycle --------------------

    def start(self, *, monitor: bool = True) -> None:
        self._stop_event.clear()
        self.rebuild("start", force=True)
        if monitor:
            self._monitor = threading.Thread(target=self._run, daemon=True)
            self._monitor.start()

    def stop(self) -> None:
        self._stop_event.set()
        t = self._monitor
        if t and t.is_alive():
            self._tasks.put(None)
            if t is not threading.current_thread():
                t.join(timeout=1.0)
        self._monitor = None
        self.generation += 1
        self.registry.release(self.topic)
        self._set_state(ConnectionState.DISCONNECTED)

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run `fn(*args)` on the supervisor thread.

        Without a running monitor (or when already on it) the call runs inline.
        After `stop()` it is dropped.
        """
        if self._stop_event.is_set():
            return
        t = self._monitor
        if t is None or not t.is_alive() or threading.current_thread() is t:
            fn(*args)
            return
        self._tasks.put((fn, args))

    @property
    def handle(self) -> Subscription | None:
        return self.registry.current(self.topic)

    # -------------------- triggers --------------------

    def on_visibility_change(self, visible: bool) -> bool:
        return self.rebuild("visible") if visible else False

    def on_focus(self) -> bool:
        return self.rebuild("focus")

    def on_navigate(self, view: str) -> bool:
        if self.dependent_view is not None and view != self.dependent_view:
            return False
        return self.rebuild(f"navigate:{view}")

    def on_heartbeat(self, ts: float | None = None) -> None:
        self.last_heartbeat = self.clock() if ts is None else ts

    def missed_heartbeats(self, now: float | None = None) -> int:
        if self.last_heartbeat is None:
            return 0
        now = self.clock() if now is None else now
        interval = self.config.heartbeat_interval.total_seconds()
        return int((now - self.last_heartbeat) // interval)

    def check_liveness(self, now: float | None = None) -> ConnectionState:
        """One missed heartbeat is tolerated; two in a row mean STALE and a rebuild."""
        if self.state is ConnectionState.CONNECTED and self.missed_heartbeats(now) >= 2:
            logger.warning("no heartbeat for %d intervals on %s; marking stale", self.missed_heartbeats(now), self.topic)
            self._set_state(ConnectionState.STALE)
            if self.on_stale is not None:
                self.on_stale()
            self.rebuild("stale", force=True)
        elif self.state is ConnectionState.STALE:
            self.rebuild("stale")
        elif self.state is ConnectionState.DISCONNECTED and self.failures and self.channel.connected:
            self.rebuild("retry")
        return self.state

    def _on_channel_status(self, connected: bool) -> None:
        if connected:
            self.submit(self._force_rebuild, "reconnected")
        elif self.state is not ConnectionState.DISCONNECTED:
            logger.warning("channel lost while %s on %s", self.state.value, self.topic)
            self._set_state(ConnectionState.DISCONNECTED)

    # -------------------- rebuild --------------------

    def rebuild(self, reason: str, *, force: bool = False) -> bool:
        """Run one rebuild cycle. Returns False when the trigger was coalesced."""
        if not self._guard.acquire(blocking=False):
            logger.debug("rebuild(%s) coalesced: already running", reason)
            return False
        try:
            now = self.clock()
            debounce = self.config.debounce.total_seconds()
            if not force and self._last_rebuild_at is not None and now - self._last_rebuild_at < debounce:
                logger.debug("rebuild(%s) coalesced: within debounce window", reason)
                return False
            self._last_rebuild_at = now

            self.generation += 1
            gen = self.generation
            self.rebuild_count += 1
            logger.info("rebuild #%d (%s) on %s", self.rebuild_count, reason, self.topic)

            first = self.state is ConnectionState.DISCONNECTED and self.rebuild_count == 1
            self._set_state(ConnectionState.CONNECTING if first else ConnectionState.RECONNECTING)

            self.registry.release(self.topic)
            self.sleep(self.config.settle_delay.total_seconds())
            if gen != self.generation:
                return False
            self.registry.claim(self.topic, lambda event: self._handle_event(gen, event))

            if not self._refetch(gen):
                return True

            self.last_heartbeat = self.clock()
            self._set_state(ConnectionState.CONNECTED if self.channel.connected else ConnectionState.DISCONNECTED)
            return True
        finally:
            self._guard.release()

    def _force_rebuild(self, reason: str) -> bool:
        return self.rebuild(reason, force=True)

    def refresh(self) -> bool:
        """Refetch for the current handle without rebuilding."""
        return self._refetch(self.generation)

    # -------------------- internals --------------------

    def _refetch(self, gen: int) -> bool:
        try:
            snapshot = self.refetch()
        except RelayError as e:
            self.failures += 1
            logger.warning("refetch failed on %s (%d in a row): %s", self.topic, self.failures, e)
            self._set_state(ConnectionState.DISCONNECTED)
            if self.failures == self.max_silent_failures and self.on_error is not None:
                self.on_error(SubscriptionLost(f"{self.topic}: {e}"))
            return False
        if gen != self.generation:
            logger.debug("discarding refetch for generation %d (now %d)", gen, self.generation)
            return False
        self.failures = 0
        self.on_snapshot(snapshot)
        return True

    def _handle_event(self, gen: int, event: ChangeEvent) -> None:
        self.submit(self._apply_event, gen, event)

    def _apply_event(self, gen: int, event: ChangeEvent) -> None:
        if gen != self.generation:
            return
        if self._dedup.is_duplicate(event.event_id):
            return
        if self.on_event is not None:
            self.on_event(event)
        self._refetch(gen)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    def _run(self) -> None:
        interval = max(self.config.heartbeat_interval.total_seconds() / 2, 0.05)
        next_check = time.monotonic() + interval
        while not self._stop_event.is_set():
            try:
                task = self._tasks.get(timeout=max(next_check - time.monotonic(), 0.0))
            except queue.Empty:
                task = ()
            if task is None:
                break
            try:
                if task:
                    fn, args = task
                    fn(*args)
                if time.monotonic() >= next_check:
                    next_check = time.monotonic() + interval
                    self.check_liveness()
            except Exception:
                logger.exception("supervisor task failed on %s", self.topic)
