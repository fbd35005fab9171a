from __future__ import annotations

# Staff client: visit reports.
#
# Reporting a visit is the only thing that fulfils a storefront request. The
# relay writes the report and, if an active request for that store is still
# inside its validity window, consumes it in the same call.

import argparse
import logging
import time
from datetime import datetime
from typing import Any

from .errors import RelayError
from .mqtt_client import MqttClient
from .relay import RelayClient

logger = logging.getLogger(__name__)


def record_visit(
    relay: RelayClient,
    *,
    store_id: str,
    staff_id: str,
    guest_count: int = 1,
    guided_at: datetime | None = None,
) -> dict[str, Any]:
    """Report the visit, then fetch today's totals.

    Only the report can fail the call. When the totals cannot be fetched the
    visit is still recorded: `today` is None and `today_error` says why.
    """
    fields: dict[str, Any] = {"store_id": store_id, "staff_id": staff_id, "guest_count": int(guest_count)}
    if guided_at is not None:
        fields["guided_at"] = guided_at.isoformat()
    resp = relay.call("report_visit", **fields)
    try:
        resp["today"] = relay.call("todays_visits", store_id=store_id)
    except RelayError as e:
        logger.warning("visit recorded but today's totals are unavailable: %s", e)
        resp["today"] = None
        resp["today_error"] = str(e)
    return resp


def report_visit(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    store_id: str,
    staff_id: str,
    guest_count: int = 1,
    guided_at: datetime | None = None,
) -> dict[str, Any]:
    mqtt = MqttClient(client_id=f"staff-{staff_id}-{int(time.time() * 1000)}", host=mqtt_host, port=mqtt_port)
    mqtt.start()

    relay = RelayClient(mqtt, namespace=namespace)
    relay.start()

    try:
        return record_visit(relay, store_id=store_id, staff_id=staff_id, guest_count=guest_count, guided_at=guided_at)
    finally:
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Staff visit report (MQTT)")
    parser.add_argument("--store-id", required=True)
    parser.add_argument("--staff-id", required=True)
    parser.add_argument("--guest-count", type=int, default=1)
    parser.add_argument("--guided-at", default=None, help="ISO timestamp (default: now)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    args = parser.parse_args()

    guided_at = datetime.fromisoformat(args.guided_at) if args.guided_at else None

    try:
        resp = report_visit(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            store_id=args.store_id,
            staff_id=args.staff_id,
            guest_count=args.guest_count,
            guided_at=guided_at,
        )
    except RelayError as e:
        print(f"[staff {args.staff_id}] error ({e.code}): {e}")
        raise SystemExit(1)

    consumed = resp.get("consumed")
    if consumed:
        print(f"[staff {args.staff_id}] visit recorded; request #{consumed['id']} fulfilled")
    else:
        print(f"[staff {args.staff_id}] visit recorded")

    if resp.get("today_error"):
        print(f"[staff {args.staff_id}] warning: today's totals unavailable: {resp['today_error']}")
    today = resp.get("today") or {}
    if today:
        print(f"[staff {args.staff_id}] {today.get('guest_total', 0)} guests guided on {today.get('operating_date')}")


if __name__ == "__main__":
    main()
