from __future__ import annotations

# Storefront client.
#
# A storefront broadcast is a short-lived process:
# - connect to broker
# - send a create_request to the relay
# - wait for the response
# - print the outcome (created, quota exhausted, disabled) and exit

import argparse
import time
from typing import Any

from .config import FIRST_TIME_GUEST
from .errors import RelayError
from .mqtt_client import MqttClient
from .relay import RelayClient


def send_request(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    store_id: str,
    kind: str = FIRST_TIME_GUEST,
    store_name: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    # Use a unique client id so several storefronts can run concurrently.
    client_id = f"store-{store_id}-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    relay = RelayClient(mqtt, namespace=namespace)
    relay.start()

    try:
        fields: dict[str, Any] = {"store_id": store_id, "kind": kind}
        if store_name:
            fields["sender_name"] = store_name
        if message:
            fields["message"] = message
        return relay.call("create_request", **fields)
    finally:
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Storefront request broadcast (MQTT)")
    parser.add_argument("--store-id", required=True)
    parser.add_argument("--kind", default=FIRST_TIME_GUEST)
    parser.add_argument("--store-name", default=None)
    parser.add_argument("--message", default=None)
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    args = parser.parse_args()

    try:
        resp = send_request(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            store_id=args.store_id,
            kind=args.kind,
            store_name=args.store_name,
            message=args.message,
        )
    except RelayError as e:
        print(f"[store {args.store_id}] rejected ({e.code}): {e}")
        raise SystemExit(1)

    req = resp["request"]
    print(
        f"[store {args.store_id}] request #{req['id']} sent, expires at {req['expires_at']} "
        f"({resp['remaining_quota']} left this month)"
    )


if __name__ == "__main__":
    main()
