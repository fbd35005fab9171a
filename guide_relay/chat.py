from __future__ import annotations

# Staff chat client.
#
# Keeps the staff chat subscription alive through a ConnectionSupervisor (same
# triggers as the request dashboard) and prints the unread count as a title
# line whenever it changes. An empty input line marks the chat as read; any
# other line is sent as a message.

import argparse
import logging
import sys
import time
from typing import Any, Callable

from .channel import NotificationChannel
from .config import RelayConfig, load_config
from .errors import RelayError
from .models import ChatMessage
from .store import MESSAGES_TABLE, ChangeEvent
from .supervisor import ConnectionSupervisor
from .topics import staff_chat, worker_heartbeat
from .unread import UnreadTracker
from .worker import HEARTBEAT

TITLE = "Staff chat"
HISTORY = 50


class StaffChatView:
    """Unread title plus one line per incoming message."""

    def __init__(self, tracker: UnreadTracker, *, out: Callable[[str], None] = print) -> None:
        self.tracker = tracker
        self.out = out
        self._last_title: str | None = None

    def on_snapshot(self, snapshot: dict[str, Any]) -> None:
        messages = [ChatMessage.from_dict(m) for m in snapshot.get("messages") or []]
        self.tracker.recount(messages)
        self._render()

    def on_event(self, event: ChangeEvent) -> None:
        self.tracker.on_event(event)
        if event.table == MESSAGES_TABLE and event.op == "INSERT":
            row = event.row
            self.out(f"[chat] {row.get('sender_name') or row.get('sender_id')}: {row.get('message')}")
        self._render()

    def mark_as_read(self) -> None:
        self.tracker.mark_as_read()
        self._render()

    def _render(self) -> None:
        title = self.tracker.title(TITLE)
        if title != self._last_title:
            self._last_title = title
            self.out(f"[chat] {title}")


def chat_supervisor(
    channel: NotificationChannel,
    relay: Any,
    view: StaffChatView,
    *,
    namespace: str,
    config: RelayConfig | None = None,
) -> ConnectionSupervisor:
    """`relay` is anything with `call(mtype, **fields)` (normally a RelayClient)."""
    return ConnectionSupervisor(
        channel,
        staff_chat(namespace),
        refetch=lambda: relay.call("list_messages", limit=HISTORY),
        on_snapshot=view.on_snapshot,
        on_event=view.on_event,
        config=config,
        on_error=lambda e: view.out(f"[chat] connection problem: {e}"),
    )


def run_chat(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    user_id: str,
    name: str | None = None,
    config_path: str | None = None,
) -> None:
    from .channel import MqttChannel
    from .mqtt_client import MqttClient
    from .relay import RelayClient

    config = load_config(config_path)
    mqtt = MqttClient(client_id=f"chat-{user_id}-{int(time.time() * 1000)}", host=mqtt_host, port=mqtt_port)
    mqtt.start()

    relay = RelayClient(mqtt, namespace=namespace)
    relay.start()

    view = StaffChatView(UnreadTracker(user_id))
    supervisor = chat_supervisor(MqttChannel(mqtt), relay, view, namespace=namespace, config=config)

    heartbeat_topic = worker_heartbeat(namespace)

    def on_message(topic: str, msg: dict[str, Any]) -> None:
        if topic == heartbeat_topic and msg.get("type") == HEARTBEAT:
            supervisor.on_heartbeat()

    mqtt.subscribe(heartbeat_topic)
    mqtt.add_handler(on_message)
    supervisor.start()

    print(f"[chat {user_id}] connected to MQTT {mqtt_host}:{mqtt_port}, namespace={namespace}")
    print(f"[chat {user_id}] empty line = mark as read, anything else = send")

    try:
        for line in sys.stdin:
            text = line.strip()
            if not text:
                view.mark_as_read()
                continue
            try:
                relay.call("send_chat", sender_id=user_id, sender_role="staff", sender_name=name, message=text)
            except RelayError as e:
                print(f"[chat {user_id}] not sent ({e.code}): {e}")
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.stop()
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Staff chat with unread counter (MQTT)")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    parser.add_argument("--config", default=None, help="JSON settings file (camelCase keys)")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    run_chat(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        user_id=args.user_id,
        name=args.name,
        config_path=args.config,
    )


if __name__ == "__main__":
    main()
