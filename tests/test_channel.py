from datetime import datetime, timedelta

import pytest

from guide_relay.channel import ChangePublisher, EventDeduper, LocalChannel, SubscriptionStatus
from guide_relay.config import FIRST_TIME_GUEST, RelayConfig
from guide_relay.errors import ChannelUnavailable
from guide_relay.ledger import RequestLedger
from guide_relay.lifecycle import RequestLifecycleEngine
from guide_relay.store import ChangeEvent, MemoryStore
from guide_relay.topics import requests_for_store, staff_chat

NS = "demo/v0"


def test_local_channel_delivers_to_matching_subscribers():
    ch = LocalChannel()
    got_exact, got_wild, got_other = [], [], []
    ch.subscribe("demo/v0/stores/S1/requests", got_exact.append)
    ch.subscribe("demo/v0/stores/+/requests", got_wild.append)
    ch.subscribe("demo/v0/chat/staff", got_other.append)

    event = ChangeEvent("INSERT", "status_requests", {"id": 1, "store_id": "S1"})
    ch.publish("demo/v0/stores/S1/requests", event)

    assert got_exact == [event]
    assert got_wild == [event]
    assert got_other == []


def test_nothing_delivered_while_down():
    ch = LocalChannel()
    got, statuses = [], []
    sub = ch.subscribe("t", got.append)
    ch.add_status_listener(statuses.append)

    ch.drop()
    assert sub.status is SubscriptionStatus.STALE
    with pytest.raises(ChannelUnavailable):
        ch.publish("t", ChangeEvent("INSERT", "chat_messages", {"id": 1}))

    ch.restore()
    assert sub.status is SubscriptionStatus.CONNECTED
    assert got == []
    assert statuses == [False, True]


def test_unsubscribe_closes_handle():
    ch = LocalChannel()
    got = []
    sub = ch.subscribe("t", got.append)
    ch.unsubscribe(sub)
    assert not sub.live
    assert ch.subscriptions("t") == []
    ch.publish("t", ChangeEvent("INSERT", "chat_messages", {"id": 1}))
    assert got == []


def test_failing_subscriber_does_not_block_others():
    ch = LocalChannel()
    got = []

    def broken(event):
        raise RuntimeError("boom")

    ch.subscribe("t", broken)
    ch.subscribe("t", got.append)
    ch.publish("t", ChangeEvent("INSERT", "chat_messages", {"id": 1}))
    assert len(got) == 1


def test_deduper_is_bounded():
    d = EventDeduper(capacity=2)
    assert d.is_duplicate("a") is False
    assert d.is_duplicate("a") is True
    d.is_duplicate("b")
    d.is_duplicate("c")
    # "a" fell out of the window.
    assert d.is_duplicate("a") is False


def test_change_event_message_shape():
    event = ChangeEvent("UPDATE", "status_requests", {"id": 3}, old={"id": 3, "is_consumed": False})
    back = ChangeEvent.from_message(event.to_message())
    assert back == event
    with pytest.raises(ValueError):
        ChangeEvent.from_message({"type": "change", "row": "nope"})


def test_publisher_routes_store_changes_to_topics():
    store = MemoryStore()
    ch = LocalChannel()
    publisher = ChangePublisher(store, ch, namespace=NS)
    publisher.start()

    s1, s2, chat = [], [], []
    ch.subscribe(requests_for_store("S1", NS), s1.append)
    ch.subscribe(requests_for_store("S2", NS), s2.append)
    ch.subscribe(staff_chat(NS), chat.append)

    now = datetime(2024, 5, 14, 12, 0)
    config = RelayConfig()
    RequestLedger(store, config, clock=lambda: now).create_request("S1", FIRST_TIME_GUEST)
    RequestLifecycleEngine(store, config, clock=lambda: now).record_visit(
        "S1", "staff-1", guided_at=now + timedelta(minutes=2)
    )

    assert [e.op for e in s1] == ["INSERT", "UPDATE"]
    assert s2 == []
    assert [(e.op, e.row["message_type"]) for e in chat] == [("INSERT", "status_request")]

    publisher.stop()
    store.write_message(sender_id="u1", sender_role="staff", message="hi", created_at=now)
    assert len(chat) == 1


def test_publisher_survives_channel_outage():
    store = MemoryStore()
    ch = LocalChannel()
    ChangePublisher(store, ch, namespace=NS).start()
    ch.drop()
    # The write itself must succeed; subscribers catch up by refetching.
    msg = store.write_message(sender_id="u1", sender_role="staff", message="hi", created_at=datetime(2024, 5, 14))
    assert store.read_messages(1) == [msg]
