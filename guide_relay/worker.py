from __future__ import annotations

# Background worker.
#
# Runs independently of any dashboard: a dashboard may be suspended for minutes
# while the worker keeps going. It shares no memory with the foreground; all
# coordination is messages (heartbeat, click routing, commands) or the store.
#
# IMPORTANT: This file contains two layers:
# 1) `Worker` (pure logic + timers, testable without MQTT)
# 2) `MqttClientHub` + `main()` (integration with the MQTT broker)
#
# Timers (all instance fields, started/stopped explicitly):
# - heartbeat: liveness signal to attached dashboards
# - poll:      latest chat message, notify when its id differs from the marker
# - keepalive: trivial idempotent action, failures swallowed
#
# Commands arriving over MQTT are queued with `post_command()` and handled on
# the worker's own command thread: a PUSH fetches the latest message, and that
# reply is delivered on the network thread the command arrived on.

import argparse
import logging
import queue
import threading
import time
import webbrowser
from typing import Any, Callable, TYPE_CHECKING
from urllib.parse import urlencode

from .config import RelayConfig, load_config
from .errors import MalformedPushPayload, RelayError
from .models import ChatMessage
from .notifications import (
    BODY_FALLBACK,
    DEFAULT_URL,
    TITLE_MESSAGE,
    Notification,
    NotificationSurface,
    PushPayload,
    apply_push,
    for_message,
    parse_push_payload,
    unique_tag,
)

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

HEARTBEAT = "HEARTBEAT"
NOTIFICATION_CLICKED = "NOTIFICATION_CLICKED"
RESTART_HEARTBEAT = "RESTART_HEARTBEAT"
SEND_NOTIFICATION = "SEND_NOTIFICATION"
PUSH = "PUSH"
NOTIFICATION_CLICK = "NOTIFICATION_CLICK"
FOCUS_COMMAND = "FOCUS"


class ClientHub:
    """The worker's view of attached foreground clients."""

    def client_ids(self) -> list[str]:
        """Attached clients, most recently active first."""
        raise NotImplementedError

    def post(self, client_id: str, message: dict[str, Any]) -> None:
        raise NotImplementedError

    def focus(self, client_id: str) -> None:
        raise NotImplementedError

    def open_client(self, url: str) -> None:
        raise NotImplementedError

    def broadcast(self, message: dict[str, Any]) -> None:
        for cid in self.client_ids():
            self.post(cid, message)

    def prune(self) -> None:
        """Forget clients that went away. Idempotent."""


class LocalClientHub(ClientHub):
    """In-process hub: clients attach an inbox callback."""

    def __init__(self, opener: Callable[[str], Any] | None = None) -> None:
        self._inboxes: dict[str, Callable[[dict[str, Any]], None]] = {}
        self._lock = threading.Lock()
        self.focused: list[str] = []
        self.opened: list[str] = []
        self._opener = opener

    def attach(self, client_id: str, inbox: Callable[[dict[str, Any]], None]) -> None:
        with self._lock:
            self._inboxes.pop(client_id, None)
            self._inboxes[client_id] = inbox

    def detach(self, client_id: str) -> None:
        with self._lock:
            self._inboxes.pop(client_id, None)

    def client_ids(self) -> list[str]:
        with self._lock:
            return list(reversed(self._inboxes))

    def post(self, client_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            inbox = self._inboxes.get(client_id)
        if inbox is not None:
            inbox(message)

    def focus(self, client_id: str) -> None:
        self.focused.append(client_id)

    def open_client(self, url: str) -> None:
        self.opened.append(url)
        if self._opener is not None:
            self._opener(url)


class _Timer:
    """One periodic tick on its own daemon thread."""

    def __init__(self, name: str, interval: float, tick: Callable[[], Any]) -> None:
        self.name = name
        self.interval = interval
        self.tick = tick
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"worker-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                # Keep ticking even if an occasional error occurs.
                logger.exception("%s tick failed", self.name)


class Worker:
    def __init__(
        self,
        *,
        fetch_latest: Callable[[], ChatMessage | None],
        surface: NotificationSurface,
        clients: ClientHub,
        config: RelayConfig | None = None,
        keepalive: Callable[[], Any] | None = None,
        self_sender_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.fetch_latest = fetch_latest
        self.surface = surface
        self.clients = clients
        self.config = config or RelayConfig()
        self.keepalive = keepalive or clients.prune
        self.self_sender_id = self_sender_id
        self.clock = clock

        # LastSeenMarker: process-local, gone on restart.
        self.last_seen_id: int | None = None
        self.shown: int = 0
        self._marker_lock = threading.Lock()

        self._heartbeat: _Timer | None = None
        self._poll: _Timer | None = None
        self._keepalive: _Timer | None = None
        self._commands: queue.Queue = queue.Queue()
        self._command_thread: threading.Thread | None = None

    # -------------------- lifecycle --------------------

    @property
    def running(self) -> bool:
        return self._poll is not None

    def start(self) -> None:
        if self.running:
            return
        self._poll = _Timer("poll", self.config.poll_interval.total_seconds(), self.poll_tick)
        self._keepalive = _Timer("keepalive", self.config.keepalive_interval.total_seconds(), self.keepalive_tick)
        self._poll.start()
        self._keepalive.start()
        self._command_thread = threading.Thread(target=self._command_loop, name="worker-commands", daemon=True)
        self._command_thread.start()
        self.restart_heartbeat()
        logger.info("worker started")

    def stop(self) -> None:
        for timer in (self._heartbeat, self._poll, self._keepalive):
            if timer is not None:
                timer.stop()
        self._heartbeat = self._poll = self._keepalive = None
        t = self._command_thread
        if t is not None:
            self._commands.put(None)
            if t is not threading.current_thread():
                t.join(timeout=1.0)
        self._command_thread = None
        logger.info("worker stopped")

    def restart_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()
        self._heartbeat = _Timer("heartbeat", self.config.heartbeat_interval.total_seconds(), self.heartbeat_tick)
        self._heartbeat.start()

    # -------------------- ticks --------------------

    def heartbeat_tick(self) -> None:
        try:
            self.clients.broadcast({"type": HEARTBEAT, "timestamp": int(self.clock() * 1000)})
        except RelayError as e:
            logger.warning("heartbeat not delivered: %s", e)

    def poll_tick(self) -> bool:
        """Returns True when a notification was shown."""
        try:
            latest = self.fetch_latest()
        except RelayError as e:
            logger.warning("poll failed, retrying next tick: %s", e)
            return False
        if latest is None or not self._advance_marker(latest.id):
            return False
        if self.self_sender_id is not None and latest.sender_id == self.self_sender_id:
            logger.debug("message %s is our own; not notifying", latest.id)
            return False
        self._show(for_message(latest, urgent_kinds=self.config.urgent_kinds, tag_prefix="poll"))
        return True

    def keepalive_tick(self) -> None:
        try:
            self.keepalive()
        except Exception as e:
            logger.debug("keepalive failed: %s", e)

    # -------------------- events --------------------

    def handle_push(self, raw: Any) -> Notification:
        """Show a notification for an out-of-band push; the latest message is ground truth."""
        try:
            payload = parse_push_payload(raw)
        except MalformedPushPayload as e:
            logger.warning("ignoring push payload: %s", e)
            payload = PushPayload()

        try:
            latest = self.fetch_latest()
        except RelayError as e:
            logger.warning("latest message unavailable for push: %s", e)
            notification = Notification(title=TITLE_MESSAGE, body=BODY_FALLBACK, tag=unique_tag("push-error"))
            self._show(notification)
            return notification

        if latest is not None:
            self._advance_marker(latest.id)
        notification = apply_push(for_message(latest, urgent_kinds=self.config.urgent_kinds), payload)
        self._show(notification)
        return notification

    def handle_click(self, event: dict[str, Any]) -> str | None:
        """Route a notification click. Returns the focused client id or the opened URL."""
        if event.get("action") == "close":
            return None
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        url = data.get("url") or DEFAULT_URL
        entity_id = data.get("entity_id")

        ids = self.clients.client_ids()
        if ids:
            cid = ids[0]
            self.clients.focus(cid)
            self.clients.post(
                cid,
                {"type": NOTIFICATION_CLICKED, "url": url, "entity_id": entity_id, "urgent": bool(data.get("urgent"))},
            )
            return cid

        if entity_id is not None:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}{urlencode({'entity_id': entity_id})}"
        self.clients.open_client(url)
        return url

    def post_command(self, msg: dict[str, Any]) -> None:
        """Queue a command for the command thread; handled inline when not running."""
        t = self._command_thread
        if t is None or not t.is_alive():
            self.handle_command(msg)
            return
        self._commands.put(msg)

    def handle_command(self, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")
        if mtype == RESTART_HEARTBEAT:
            logger.info("heartbeat restart requested")
            self.restart_heartbeat()
            return
        if mtype == SEND_NOTIFICATION:
            payload = msg.get("payload")
            self._show(Notification.from_dict(payload if isinstance(payload, dict) else {}))
            return
        if mtype == PUSH:
            self.handle_push(msg.get("payload"))
            return
        if mtype == NOTIFICATION_CLICK:
            self.handle_click(msg)
            return
        logger.debug("unknown worker command %r", mtype)

    # -------------------- internals --------------------

    def _advance_marker(self, message_id: int) -> bool:
        with self._marker_lock:
            if message_id == self.last_seen_id:
                return False
            self.last_seen_id = message_id
            return True

    def _show(self, notification: Notification) -> None:
        self.surface.show(notification)
        self.shown += 1

    def _command_loop(self) -> None:
        while True:
            msg = self._commands.get()
            if msg is None:
                return
            try:
                self.handle_command(msg)
            except Exception:
                logger.exception("command %r failed", msg.get("type"))


class MqttClientHub(ClientHub):
    """Clients announce themselves on the presence topic every few seconds.

    A client counts as attached while its last presence message is younger
    than `presence_ttl` seconds.
    """

    def __init__(
        self,
        mqtt: MqttClient,
        *,
        namespace: str,
        presence_ttl: float,
        opener: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        from .topics import client_inbox, client_presence, worker_heartbeat

        self._client_inbox = client_inbox
        self._heartbeat_topic = worker_heartbeat(namespace)
        self._presence_topic = client_presence(namespace)

        self.mqtt = mqtt
        self.namespace = namespace
        self.presence_ttl = presence_ttl
        self.opener = opener

        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        self.mqtt.subscribe(self._presence_topic)
        self.mqtt.add_handler(self._handle_message)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != self._presence_topic or msg.get("type") != "presence":
            return
        cid = msg.get("client_id")
        if not isinstance(cid, str) or not cid:
            return
        with self._lock:
            if msg.get("state") == "gone":
                self._last_seen.pop(cid, None)
            else:
                self._last_seen[cid] = time.time()

    def prune(self) -> None:
        cutoff = time.time() - self.presence_ttl
        with self._lock:
            for cid in [c for c, ts in self._last_seen.items() if ts < cutoff]:
                del self._last_seen[cid]

    def client_ids(self) -> list[str]:
        self.prune()
        with self._lock:
            return [c for c, _ in sorted(self._last_seen.items(), key=lambda kv: kv[1], reverse=True)]

    def post(self, client_id: str, message: dict[str, Any]) -> None:
        self.mqtt.publish(self._client_inbox(client_id, self.namespace), message)

    def focus(self, client_id: str) -> None:
        self.post(client_id, {"type": FOCUS_COMMAND})

    def open_client(self, url: str) -> None:
        self.opener(url)

    def broadcast(self, message: dict[str, Any]) -> None:
        # Every dashboard listens on one heartbeat topic.
        self.mqtt.publish(self._heartbeat_topic, message)


def listen_for_commands(worker: Worker, mqtt: MqttClient, commands_topic: str) -> None:
    """Route messages on the command topic to the worker's command thread."""

    def on_command(topic: str, msg: dict[str, Any]) -> None:
        if topic == commands_topic:
            worker.post_command(msg)

    mqtt.subscribe(commands_topic)
    mqtt.add_handler(on_command)


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient
    from .notifications import MqttSurface
    from .relay import RelayClient
    from .topics import worker_commands

    parser = argparse.ArgumentParser(description="Background notification worker (MQTT)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    parser.add_argument("--config", default=None, help="JSON settings file (camelCase keys)")
    parser.add_argument("--self-sender-id", default=None, help="do not notify for messages sent by this id")
    parser.add_argument("--base-url", default="http://127.0.0.1:5173", help="prefix for URLs opened on click")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config(args.config)

    mqtt_client = MqttClient(client_id=f"worker-{int(time.time())}", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    relay = RelayClient(mqtt_client, namespace=args.namespace)
    relay.start()

    hub = MqttClientHub(
        mqtt_client,
        namespace=args.namespace,
        presence_ttl=2 * config.heartbeat_interval.total_seconds(),
        opener=lambda url: webbrowser.open(args.base_url.rstrip("/") + url),
    )
    hub.start()

    worker = Worker(
        fetch_latest=relay.latest_message,
        surface=MqttSurface(mqtt_client, namespace=args.namespace),
        clients=hub,
        config=config,
        self_sender_id=args.self_sender_id,
    )

    listen_for_commands(worker, mqtt_client, worker_commands(args.namespace))
    worker.start()

    print(f"[worker] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        worker.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
