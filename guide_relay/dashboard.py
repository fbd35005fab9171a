from __future__ import annotations

# Terminal dashboard for one store's requests (the foreground context).
#
# Architecture:
# - MQTT callbacks run on paho's network thread and must not block: anything
#   that refetches is handed to the supervisor thread with `submit()`.
# - ConnectionSupervisor owns the store's request subscription; everything that
#   should make us resubscribe (resume after SIGSTOP/SIGCONT, a click routed
#   from the worker, broker reconnect, missing worker heartbeats) calls into it.
# - CountdownPresenter ticks once a second on its own thread and we print a
#   line whenever the rendered text changes.
# - We announce presence so the worker can route notification clicks to us.

import argparse
import logging
import signal
import threading
import time
from typing import Any
from urllib.parse import urlparse

from .channel import MqttChannel
from .config import FIRST_TIME_GUEST, load_config
from .countdown import CountdownPresenter, CountdownView
from .errors import ChannelUnavailable
from .models import StatusRequest
from .mqtt_client import MqttClient
from .relay import RelayClient
from .supervisor import ConnectionState, ConnectionSupervisor
from .topics import client_inbox, client_presence, requests_for_store, worker_commands, worker_heartbeat
from .worker import FOCUS_COMMAND, HEARTBEAT, NOTIFICATION_CLICKED, RESTART_HEARTBEAT

VIEW = "requests"


def run_dashboard(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    store_id: str,
    kind: str,
    config_path: str | None = None,
) -> None:
    config = load_config(config_path)
    client_id = f"dashboard-{store_id}-{int(time.time() * 1000)}"

    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    relay = RelayClient(mqtt, namespace=namespace)
    relay.start()
    channel = MqttChannel(mqtt)

    current: dict[str, StatusRequest | None] = {"request": None}
    lock = threading.Lock()

    def on_snapshot(snapshot: dict[str, Any]) -> None:
        latest = snapshot.get("latest")
        with lock:
            current["request"] = StatusRequest.from_dict(latest) if latest else None
        print(f"[dashboard {store_id}] {snapshot.get('count')}/{snapshot.get('quota')} requests this month")

    def on_state(state: ConnectionState) -> None:
        print(f"[dashboard {store_id}] {state.value}")

    def on_stale() -> None:
        try:
            mqtt.publish(worker_commands(namespace), {"type": RESTART_HEARTBEAT})
        except ChannelUnavailable as e:
            print(f"[dashboard {store_id}] worker restart not sent: {e}")

    supervisor = ConnectionSupervisor(
        channel,
        requests_for_store(store_id, namespace),
        refetch=lambda: relay.store_snapshot(store_id, kind),
        on_snapshot=on_snapshot,
        config=config,
        dependent_view=VIEW,
        on_state=on_state,
        on_stale=on_stale,
        on_error=lambda e: print(f"[dashboard {store_id}] connection problem: {e}"),
    )

    heartbeat_topic = worker_heartbeat(namespace)
    inbox_topic = client_inbox(client_id, namespace)

    def on_message(topic: str, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")
        if topic == heartbeat_topic and mtype == HEARTBEAT:
            supervisor.on_heartbeat()
        elif topic == inbox_topic and mtype == FOCUS_COMMAND:
            supervisor.submit(supervisor.on_focus)
        elif topic == inbox_topic and mtype == NOTIFICATION_CLICKED:
            view = urlparse(str(msg.get("url") or "")).path.rstrip("/").rsplit("/", 1)[-1]
            print(f"[dashboard {store_id}] opened from notification (entity {msg.get('entity_id')})")
            supervisor.submit(supervisor.on_navigate, view or VIEW)

    mqtt.subscribe(heartbeat_topic)
    mqtt.subscribe(inbox_topic)
    mqtt.add_handler(on_message)

    if hasattr(signal, "SIGCONT"):
        # Resumed after being suspended: the terminal's "page visible again".
        signal.signal(signal.SIGCONT, lambda signum, frame: supervisor.submit(supervisor.on_visibility_change, True))

    presenter = CountdownPresenter(completed_grace=config.completed_grace)
    last_text = {"value": None}

    def on_render(view: CountdownView) -> None:
        text = view.text if view.visible else ""
        if text != last_text["value"]:
            last_text["value"] = text
            if view.visible:
                print(f"[dashboard {store_id}] {view.state.value if view.state else ''} {text}")

    def source() -> StatusRequest | None:
        with lock:
            return current["request"]

    supervisor.start()
    presenter.start(source, on_render)

    presence = client_presence(namespace)
    print(f"[dashboard {store_id}] connected to MQTT {mqtt_host}:{mqtt_port}, namespace={namespace}")

    try:
        while True:
            try:
                mqtt.publish(presence, {"type": "presence", "client_id": client_id, "view": VIEW})
            except ChannelUnavailable:
                pass  # retried next round
            time.sleep(config.heartbeat_interval.total_seconds() / 2)
    except KeyboardInterrupt:
        pass
    finally:
        try:
            mqtt.publish(presence, {"type": "presence", "client_id": client_id, "state": "gone"})
        except ChannelUnavailable:
            pass
        presenter.stop()
        supervisor.stop()
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Store request dashboard (MQTT)")
    parser.add_argument("--store-id", required=True)
    parser.add_argument("--kind", default=FIRST_TIME_GUEST)
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    parser.add_argument("--config", default=None, help="JSON settings file (camelCase keys)")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    run_dashboard(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        store_id=args.store_id,
        kind=args.kind,
        config_path=args.config,
    )


if __name__ == "__main__":
    main()
