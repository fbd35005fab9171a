from __future__ import annotations

# The relay is the *authoritative owner* of the store.
#
# IMPORTANT: This file contains three layers:
# 1) `RelayService` (pure dispatch over ledger/engine/store, easy to unit test)
# 2) `MqttRelayService` + `main()` (integration with the MQTT broker)
# 3) `RelayClient` (what storefronts, staff, dashboards and the worker call)
#
# Request/response follows the corr_id + reply_to convention of MqttClient.
# Every successful write also fans out as a row-level change event through the
# ChangePublisher, so subscribed dashboards refetch.

import argparse
import logging
import time
from datetime import datetime
from typing import Any, Callable, TYPE_CHECKING

from .business_clock import operating_date, operating_day_range
from .config import FIRST_TIME_GUEST, RelayConfig, load_config
from .errors import BadRequest, RelayError, UnknownRequest, raise_for_response
from .ledger import RequestLedger
from .lifecycle import RequestLifecycleEngine
from .models import ChatMessage, StatusRequest
from .store import Store

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)


def _require(msg: dict[str, Any], name: str) -> str:
    value = msg.get(name)
    if not isinstance(value, str) or not value:
        raise BadRequest(f"{name} required")
    return value


def _optional_dt(msg: dict[str, Any], name: str) -> datetime | None:
    value = msg.get(name)
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise BadRequest(f"{name} is not an ISO timestamp") from e


class RelayService:
    """Core dispatch (testable without MQTT)."""

    def __init__(
        self,
        store: Store,
        config: RelayConfig | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.config = config or RelayConfig()
        self.clock = clock
        self.ledger = RequestLedger(store, self.config, clock=clock)
        self.engine = RequestLifecycleEngine(store, self.config, clock=clock)

        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "create_request": self._create_request,
            "report_visit": self._report_visit,
            "todays_visits": self._todays_visits,
            "get_active_request": self._get_active_request,
            "store_snapshot": self._store_snapshot,
            "monthly_count": self._monthly_count,
            "get_request": self._get_request,
            "latest_message": self._latest_message,
            "list_messages": self._list_messages,
            "send_chat": self._send_chat,
            "ping": lambda msg: {"type": "pong"},
        }

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Dispatch one request message. Errors come back as error envelopes."""
        mtype = msg.get("type")
        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        try:
            if handler is None:
                raise UnknownRequest(f"unknown request type {mtype!r}")
            return handler(msg)
        except RelayError as e:
            logger.info("%s rejected: %s", mtype, e)
            return e.to_response().to_message()
        except (TypeError, ValueError) as e:
            return BadRequest(str(e)).to_response().to_message()

    def _request_view(self, req: StatusRequest | None) -> dict[str, Any] | None:
        if req is None:
            return None
        view = req.to_dict()
        view["state"] = req.state_at(self.clock()).value
        return view

    # -------------------- storefront --------------------

    def _create_request(self, msg: dict[str, Any]) -> dict[str, Any]:
        store_id = _require(msg, "store_id")
        kind = str(msg.get("kind") or FIRST_TIME_GUEST)
        text = msg.get("message") if isinstance(msg.get("message"), str) else None
        name = msg.get("sender_name") if isinstance(msg.get("sender_name"), str) else None
        req = self.ledger.create_request(store_id, kind, text, sender_name=name)
        return {
            "type": "request_created",
            "request": self._request_view(req),
            "remaining_quota": self.ledger.remaining_quota(store_id, kind),
        }

    def _get_active_request(self, msg: dict[str, Any]) -> dict[str, Any]:
        store_id = _require(msg, "store_id")
        kind = str(msg.get("kind") or FIRST_TIME_GUEST)
        return {"type": "active_request", "request": self._request_view(self.ledger.get_active_request(store_id, kind))}

    def _monthly_count(self, msg: dict[str, Any]) -> dict[str, Any]:
        store_id = _require(msg, "store_id")
        kind = str(msg.get("kind") or FIRST_TIME_GUEST)
        return {
            "type": "monthly_count",
            "count": self.ledger.get_monthly_count(store_id, kind),
            "quota": self.config.quota_for(store_id, kind),
        }

    def _store_snapshot(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Everything a dashboard needs after (re)subscribing."""
        store_id = _require(msg, "store_id")
        kind = str(msg.get("kind") or FIRST_TIME_GUEST)
        return {
            "type": "store_snapshot",
            "store_id": store_id,
            "kind": kind,
            "latest": self._request_view(self.ledger.get_latest_request(store_id, kind)),
            "count": self.ledger.get_monthly_count(store_id, kind),
            "quota": self.config.quota_for(store_id, kind),
        }

    def _get_request(self, msg: dict[str, Any]) -> dict[str, Any]:
        if "announcement_ref" in msg:
            req = self.ledger.get_request_for_announcement(int(msg["announcement_ref"]))
        else:
            req = self.store.get_request(int(msg.get("request_id", 0)))
        return {"type": "request", "request": self._request_view(req)}

    # -------------------- staff --------------------

    def _report_visit(self, msg: dict[str, Any]) -> dict[str, Any]:
        store_id = _require(msg, "store_id")
        staff_id = _require(msg, "staff_id")
        guest_count = int(msg.get("guest_count", 1) or 0)
        report, consumed = self.engine.record_visit(
            store_id, staff_id, guest_count, guided_at=_optional_dt(msg, "guided_at")
        )
        return {"type": "visit_recorded", "report": report.to_dict(), "consumed": self._request_view(consumed)}

    def _todays_visits(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Visit reports of the current operating day (01:00 cutover)."""
        now = self.clock()
        start, end = operating_day_range(now)
        store_id = msg.get("store_id") if isinstance(msg.get("store_id"), str) else None
        rows = self.store.read_visit_reports(store_id, start, end)
        return {
            "type": "visits",
            "operating_date": operating_date(now).isoformat(),
            "reports": [r.to_dict() for r in rows],
            "guest_total": sum(r.guest_count for r in rows),
        }

    # -------------------- chat --------------------

    def _latest_message(self, msg: dict[str, Any]) -> dict[str, Any]:
        rows = self.store.read_messages(1)
        return {"type": "messages", "messages": [m.to_dict() for m in rows]}

    def _list_messages(self, msg: dict[str, Any]) -> dict[str, Any]:
        limit = max(1, min(int(msg.get("limit", 50)), 200))
        after = msg.get("after_id")
        rows = self.store.read_messages(limit, int(after) if after is not None else None)
        return {"type": "messages", "messages": [m.to_dict() for m in rows]}

    def _send_chat(self, msg: dict[str, Any]) -> dict[str, Any]:
        text = _require(msg, "message")
        row = self.store.write_message(
            sender_id=_require(msg, "sender_id"),
            sender_role=str(msg.get("sender_role") or "staff"),
            sender_name=msg.get("sender_name") if isinstance(msg.get("sender_name"), str) else None,
            message=text,
            created_at=self.clock(),
        )
        return {"type": "chat_sent", "message": row.to_dict()}


class MqttRelayService:
    """MQTT adapter around RelayService plus the change fan-out."""

    def __init__(self, *, mqtt: MqttClient, service: RelayService, namespace: str = "guide-relay/v0") -> None:
        # Local imports so unit tests can import RelayService without paho-mqtt.
        from .channel import ChangePublisher, MqttChannel
        from .topics import relay_requests

        self._relay_requests = relay_requests(namespace)

        self.mqtt = mqtt
        self.namespace = namespace
        self.service = service
        self.channel = MqttChannel(mqtt)
        self.publisher = ChangePublisher(service.store, self.channel, namespace=namespace)

    def start(self) -> None:
        self.mqtt.subscribe(self._relay_requests)
        self.mqtt.add_handler(self._handle_message)
        self.publisher.start()

    def stop(self) -> None:
        self.publisher.stop()
        self.mqtt.remove_handler(self._handle_message)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != self._relay_requests:
            return
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            return
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply = dict(self.service.handle(msg))
        if corr_id is not None:
            reply["corr_id"] = corr_id
        self.mqtt.publish(reply_to, reply)


class RelayClient:
    """Blocking request/response calls against a running relay."""

    def __init__(self, mqtt: MqttClient, *, namespace: str = "guide-relay/v0", timeout: float = 5.0) -> None:
        from .topics import relay_requests, relay_responses

        self.mqtt = mqtt
        self.timeout = timeout
        self._request_topic = relay_requests(namespace)
        self._reply_topic = relay_responses(mqtt.client_id, namespace)

    def start(self) -> None:
        self.mqtt.subscribe(self._reply_topic)

    def call(self, mtype: str, **fields: Any) -> dict[str, Any]:
        """Raises ChannelUnavailable on timeout, RemoteError for error envelopes."""
        resp = self.mqtt.request(
            request_topic=self._request_topic,
            response_topic=self._reply_topic,
            message={"type": mtype, **fields},
            timeout=self.timeout,
        )
        raise_for_response(resp)
        return resp

    def latest_message(self) -> ChatMessage | None:
        rows = self.call("latest_message").get("messages") or []
        return ChatMessage.from_dict(rows[0]) if rows else None

    def store_snapshot(self, store_id: str, kind: str = FIRST_TIME_GUEST) -> dict[str, Any]:
        return self.call("store_snapshot", store_id=store_id, kind=kind)


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient
    from .sql_store import SqlStore

    parser = argparse.ArgumentParser(description="Request relay (store owner, MQTT)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="guide-relay/v0")
    parser.add_argument("--database-url", default="sqlite:///guide_relay.db")
    parser.add_argument("--config", default=None, help="JSON settings file (camelCase keys)")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = SqlStore(args.database_url)
    service = RelayService(store, load_config(args.config))

    mqtt_client = MqttClient(client_id="relay", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    relay = MqttRelayService(mqtt=mqtt_client, service=service, namespace=args.namespace)
    relay.start()

    print(f"[relay] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}, db={args.database_url}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        relay.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
