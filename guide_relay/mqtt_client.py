"""Small MQTT helper built on top of paho-mqtt.

Why this exists:
- paho-mqtt is callback-based.
- The relay protocol is request/response, so we also offer a *blocking
  request/response* helper.
- Dashboards and the worker need to know when the broker link drops, so
  connection changes are forwarded to status listeners.

Design:
- `MqttClient` manages connection + a background network loop.
- Topics subscribed through `subscribe()` are re-subscribed after every
  reconnect (we use a clean session).
- `request()` publishes a JSON message and waits for a correlated response.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .errors import ChannelUnavailable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]
StatusListener = Callable[[bool], None]


@dataclass(frozen=True)
class PendingResponse:
    corr_id: str
    q: "queue.Queue[dict[str, Any]]"


class MqttClient:
    """Thin wrapper around paho-mqtt with JSON convenience APIs."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._client.on_message = self._on_message
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

        # External subscribers. Called with (topic, json_message).
        self._handlers: list[MessageHandler] = []
        self._status_listeners: list[StatusListener] = []

        # corr_id -> queue used by request()
        self._pending: dict[str, PendingResponse] = {}
        self._topics: set[str] = set()
        self._lock = threading.Lock()

        self._started = False
        self.connected = False
        # Ident of paho's network thread, learned from the first callback.
        self._network_thread: int | None = None

    def start(self) -> None:
        """Connect and start the background network loop."""
        if self._started:
            return
        try:
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
        except OSError as e:
            raise ChannelUnavailable(f"cannot reach MQTT broker {self.host}:{self.port}: {e}") from e
        self._client.loop_start()
        self._started = True

    def stop(self) -> None:
        """Stop and disconnect."""
        if not self._started:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._started = False

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def subscribe(self, topic: str) -> None:
        with self._lock:
            self._topics.add(topic)
        self._client.subscribe(topic, qos=1)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._topics.discard(topic)
        self._client.unsubscribe(topic)

    def publish(self, topic: str, message: dict[str, Any], *, retain: bool = False) -> None:
        payload = json.dumps(message, separators=(",", ":"), default=str).encode("utf-8")
        info = self._client.publish(topic, payload=payload, qos=1, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ChannelUnavailable(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Publish a message and wait for a correlated response.

        The caller must ensure we are subscribed to `response_topic`. Never call
        this from a message handler: the reply is delivered on the same thread.
        """
        if self._network_thread == threading.get_ident():
            raise RuntimeError("request() on the MQTT network thread would block its own reply")
        corr_id = str(uuid.uuid4())
        msg = dict(message)
        msg["corr_id"] = corr_id
        msg["reply_to"] = response_topic

        q: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        pending = PendingResponse(corr_id=corr_id, q=q)

        with self._lock:
            self._pending[corr_id] = pending

        try:
            self.publish(request_topic, msg)
            return q.get(timeout=timeout)
        except queue.Empty as e:
            raise ChannelUnavailable(f"No response for corr_id={corr_id}") from e
        finally:
            with self._lock:
                self._pending.pop(corr_id, None)

    # -------------------- internal callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        self._network_thread = threading.get_ident()
        if reason_code.is_failure:
            logger.warning("MQTT connect refused: %s", reason_code)
            return
        with self._lock:
            topics = sorted(self._topics)
        for topic in topics:
            client.subscribe(topic, qos=1)
        self.connected = True
        logger.info("MQTT connected to %s:%s as %s", self.host, self.port, self.client_id)
        self._notify_status(True)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        self.connected = False
        logger.warning("MQTT disconnected (%s)", reason_code)
        self._notify_status(False)

    def _notify_status(self, connected: bool) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(connected)
            except Exception:
                logger.exception("status listener failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._network_thread = threading.get_ident()
        # Decode JSON (ignore malformed messages).
        #
        # Depending on paho-mqtt version / type stubs, msg.payload may be `bytes` (typical)
        # or a `str`. We normalize to text before JSON parsing.
        try:
            raw = msg.payload
            if isinstance(raw, bytes):
                payload = raw.decode("utf-8")
            else:
                payload = str(raw)
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError):
            logger.debug("dropping malformed payload on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        # First, try to match pending request.
        corr_id = data.get("corr_id")
        if isinstance(corr_id, str):
            with self._lock:
                pending = self._pending.get(corr_id)
            if pending is not None:
                try:
                    pending.q.put_nowait(data)
                except queue.Full:
                    pass
                return

        # Otherwise broadcast to handlers.
        for h in list(self._handlers):
            try:
                h(msg.topic, data)
            except Exception:
                # We swallow handler exceptions to keep the network loop alive.
                logger.exception("handler failed for %s", msg.topic)
                continue
