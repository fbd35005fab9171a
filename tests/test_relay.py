from datetime import datetime, timedelta

from guide_relay.config import FIRST_TIME_GUEST, RelayConfig
from guide_relay.relay import MqttRelayService, RelayService
from guide_relay.store import MemoryStore
from guide_relay.topics import relay_requests, requests_for_store

T0 = datetime(2024, 5, 14, 12, 0)
NS = "demo/v0"


def _service(**config):
    now = {"t": T0}
    svc = RelayService(MemoryStore(), RelayConfig(**config), clock=lambda: now["t"])
    return svc, now


def test_create_request_and_snapshot():
    svc, _ = _service()
    resp = svc.handle({"type": "create_request", "store_id": "S1", "sender_name": "Shibuya"})
    assert resp["type"] == "request_created"
    assert resp["request"]["state"] == "active"
    assert resp["request"]["expires_at"] == (T0 + timedelta(hours=1)).isoformat()
    assert resp["remaining_quota"] == 2

    snap = svc.handle({"type": "store_snapshot", "store_id": "S1"})
    assert snap["count"] == 1
    assert snap["quota"] == 3
    assert snap["latest"]["id"] == resp["request"]["id"]

    active = svc.handle({"type": "get_active_request", "store_id": "S1", "kind": FIRST_TIME_GUEST})
    assert active["request"]["id"] == resp["request"]["id"]


def test_quota_errors_become_envelopes():
    svc, _ = _service(monthly_quota_by_kind={FIRST_TIME_GUEST: 1, "vip": 0})
    svc.handle({"type": "create_request", "store_id": "S1"})
    resp = svc.handle({"type": "create_request", "store_id": "S1"})
    assert resp["type"] == "error"
    assert resp["code"] == "quota_exceeded"

    resp = svc.handle({"type": "create_request", "store_id": "S1", "kind": "vip"})
    assert resp["code"] == "kind_disabled"


def test_bad_and_unknown_requests():
    svc, _ = _service()
    assert svc.handle({"type": "create_request"})["code"] == "bad_request"
    assert svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guided_at": "yesterday"})["code"] == "bad_request"
    assert svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guest_count": -2})["code"] == "bad_request"
    assert svc.handle({"type": "nope"})["code"] == "unknown_request"
    assert svc.handle({})["code"] == "unknown_request"
    assert svc.handle({"type": "ping"}) == {"type": "pong"}


def test_report_visit_consumes_and_counts_today():
    svc, now = _service()
    created = svc.handle({"type": "create_request", "store_id": "S1"})["request"]

    now["t"] = T0 + timedelta(minutes=30)
    resp = svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guest_count": 3})
    assert resp["consumed"]["id"] == created["id"]
    assert resp["consumed"]["state"] == "consumed"
    assert resp["consumed"]["consumed_at"] == now["t"].isoformat()

    again = svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u2"})
    assert again["consumed"] is None

    today = svc.handle({"type": "todays_visits", "store_id": "S1"})
    assert today["operating_date"] == "2024-05-14"
    assert today["guest_total"] == 4
    assert len(today["reports"]) == 2


def test_todays_visits_respects_cutover():
    svc, now = _service()
    svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guided_at": "2024-05-14T23:30:00"})
    svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guided_at": "2024-05-15T00:40:00"})
    svc.handle({"type": "report_visit", "store_id": "S1", "staff_id": "u1", "guided_at": "2024-05-15T01:10:00"})

    now["t"] = datetime(2024, 5, 15, 0, 50)
    today = svc.handle({"type": "todays_visits"})
    assert today["operating_date"] == "2024-05-14"
    assert today["guest_total"] == 2


def test_expired_request_view():
    svc, now = _service()
    created = svc.handle({"type": "create_request", "store_id": "S1"})["request"]
    now["t"] = T0 + timedelta(minutes=61)
    resp = svc.handle({"type": "get_request", "request_id": created["id"]})
    assert resp["request"]["state"] == "expired"
    assert resp["request"]["is_consumed"] is False

    by_ref = svc.handle({"type": "get_request", "announcement_ref": created["announcement_ref"]})
    assert by_ref["request"]["id"] == created["id"]


def test_chat_messages():
    svc, _ = _service()
    svc.handle({"type": "create_request", "store_id": "S1"})
    sent = svc.handle({"type": "send_chat", "sender_id": "u1", "message": "on it"})
    assert sent["message"]["sender_role"] == "staff"

    latest = svc.handle({"type": "latest_message"})["messages"]
    assert [m["id"] for m in latest] == [sent["message"]["id"]]

    listed = svc.handle({"type": "list_messages", "limit": 10})["messages"]
    assert [m["message_type"] for m in listed] == ["chat", "status_request"]
    assert svc.handle({"type": "list_messages", "after_id": sent["message"]["id"]})["messages"] == []


def test_mqtt_relay_replies_and_fans_out_changes(mqtt):
    svc, _ = _service()
    relay = MqttRelayService(mqtt=mqtt, service=svc, namespace=NS)
    relay.start()
    assert relay_requests(NS) in mqtt.subscribed

    mqtt.deliver(
        relay_requests(NS),
        {"type": "create_request", "store_id": "S1", "corr_id": "c-1", "reply_to": "demo/v0/relay/responses/x"},
    )

    topics = [t for t, _ in mqtt.published]
    assert requests_for_store("S1", NS) in topics
    assert "demo/v0/chat/staff" in topics
    reply_topic, reply = mqtt.published[-1]
    assert reply_topic == "demo/v0/relay/responses/x"
    assert reply["corr_id"] == "c-1"
    assert reply["type"] == "request_created"

    change = next(m for t, m in mqtt.published if t == requests_for_store("S1", NS))
    assert change["type"] == "change"
    assert change["op"] == "INSERT"

    # No reply_to: nothing to answer.
    count = len(mqtt.published)
    mqtt.deliver(relay_requests(NS), {"type": "ping"})
    assert len(mqtt.published) == count

    relay.stop()
