from __future__ import annotations

# Notification channel: pub/sub delivery of row-level change events.
#
# Delivery contract:
# - at-least-once while connected, no ordering promise across reconnects;
# - nothing is delivered while disconnected and nothing is replayed after;
# - every event carries an `event_id`; consumers drop duplicates and treat an
#   event as a hint to refetch, never as the source of truth.
#
# Two implementations share the dispatch logic in `NotificationChannel`:
# - `LocalChannel` fans out in-process (tests, single-process demo);
# - `MqttChannel` rides on `MqttClient` and a broker.

import enum
import itertools
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from paho.mqtt.client import topic_matches_sub

from .errors import ChannelUnavailable
from .store import MESSAGES_TABLE, REQUESTS_TABLE, ChangeEvent, Store
from .topics import DEFAULT_NAMESPACE, requests_for_store, staff_chat

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]
StatusListener = Callable[[bool], None]

_handle_ids = itertools.count(1)


class SubscriptionStatus(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    CLOSED = "closed"


@dataclass(eq=False)
class Subscription:
    """Handle returned by `subscribe()`. Identity is the handle, not the topic."""

    topic: str
    on_event: EventCallback
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    handle_id: int = field(default_factory=lambda: next(_handle_ids))

    @property
    def live(self) -> bool:
        return self.status is not SubscriptionStatus.CLOSED


class EventDeduper:
    """Bounded memory of recently seen event ids."""

    def __init__(self, capacity: int = 512) -> None:
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def is_duplicate(self, event_id: str) -> bool:
        """Record `event_id`; True if it was already recorded."""
        with self._lock:
            if event_id in self._seen:
                self._seen.move_to_end(event_id)
                return True
            self._seen[event_id] = None
            while len(self._seen) > self.capacity:
                self._seen.popitem(last=False)
            return False


class NotificationChannel:
    """Shared subscribe/dispatch bookkeeping. Subclasses move bytes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: list[Subscription] = []
        self._status_listeners: list[StatusListener] = []
        self.connected = False

    # -------------------- public API --------------------

    def subscribe(self, topic: str, on_event: EventCallback) -> Subscription:
        sub = Subscription(topic=topic, on_event=on_event)
        with self._lock:
            first = not any(s.topic == topic for s in self._subs)
            self._subs.append(sub)
        if first:
            self._transport_subscribe(topic)
        if self.connected:
            sub.status = SubscriptionStatus.CONNECTED
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.status = SubscriptionStatus.CLOSED
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
            last = not any(s.topic == sub.topic for s in self._subs)
        if last:
            self._transport_unsubscribe(sub.topic)

    def subscriptions(self, topic: str | None = None) -> list[Subscription]:
        with self._lock:
            return [s for s in self._subs if topic is None or s.topic == topic]

    def publish(self, topic: str, event: ChangeEvent) -> None:
        raise NotImplementedError

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    # -------------------- transport hooks --------------------

    def _transport_subscribe(self, topic: str) -> None:
        pass

    def _transport_unsubscribe(self, topic: str) -> None:
        pass

    # -------------------- shared internals --------------------

    def _deliver(self, topic: str, event: ChangeEvent) -> int:
        with self._lock:
            targets = [s for s in self._subs if s.live and topic_matches_sub(s.topic, topic)]
        for sub in targets:
            try:
                sub.on_event(event)
            except Exception:
                logger.exception("subscriber on %s failed for event %s", sub.topic, event.event_id)
        return len(targets)

    def _set_connected(self, connected: bool) -> None:
        self.connected = connected
        status = SubscriptionStatus.CONNECTED if connected else SubscriptionStatus.STALE
        with self._lock:
            for sub in self._subs:
                if sub.live:
                    sub.status = status
        for listener in list(self._status_listeners):
            try:
                listener(connected)
            except Exception:
                logger.exception("channel status listener failed")


class LocalChannel(NotificationChannel):
    """In-process channel. `drop()`/`restore()` simulate losing the link."""

    def __init__(self) -> None:
        super().__init__()
        self.connected = True

    def publish(self, topic: str, event: ChangeEvent) -> None:
        if not self.connected:
            raise ChannelUnavailable(f"channel down, dropped {event.op} on {topic}")
        self._deliver(topic, event)

    def drop(self) -> None:
        self._set_connected(False)

    def restore(self) -> None:
        self._set_connected(True)


class MqttChannel(NotificationChannel):
    def __init__(self, mqtt: MqttClient) -> None:
        super().__init__()
        self.mqtt = mqtt
        self.connected = mqtt.connected
        mqtt.add_handler(self._handle_message)
        mqtt.add_status_listener(self._set_connected)

    def publish(self, topic: str, event: ChangeEvent) -> None:
        self.mqtt.publish(topic, event.to_message())

    def _transport_subscribe(self, topic: str) -> None:
        self.mqtt.subscribe(topic)

    def _transport_unsubscribe(self, topic: str) -> None:
        self.mqtt.unsubscribe(topic)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if msg.get("type") != "change":
            return
        try:
            event = ChangeEvent.from_message(msg)
        except ValueError:
            logger.debug("ignoring malformed change on %s", topic)
            return
        self._deliver(topic, event)


class ChangePublisher:
    """Forwards a store's change events onto channel topics.

    - status request rows -> `requests_for_store(store_id)`
    - chat rows           -> `staff_chat()`
    Visit reports are not broadcast; their effect arrives as a request update.
    """

    def __init__(self, store: Store, channel: NotificationChannel, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.store = store
        self.channel = channel
        self.namespace = namespace

    def start(self) -> None:
        self.store.add_listener(self._on_change)

    def stop(self) -> None:
        self.store.remove_listener(self._on_change)

    def topic_for(self, event: ChangeEvent) -> str | None:
        if event.table == REQUESTS_TABLE:
            store_id = event.row.get("store_id")
            return requests_for_store(str(store_id), self.namespace) if store_id else None
        if event.table == MESSAGES_TABLE:
            return staff_chat(self.namespace)
        return None

    def _on_change(self, event: ChangeEvent) -> None:
        topic = self.topic_for(event)
        if topic is None:
            return
        try:
            self.channel.publish(topic, event)
        except ChannelUnavailable as e:
            # Subscribers refetch on reconnect; the row itself is already durable.
            logger.warning("change %s not published: %s", event.event_id, e)
