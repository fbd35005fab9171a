from datetime import datetime, timedelta

from guide_relay.channel import ChangePublisher, LocalChannel
from guide_relay.chat import StaffChatView, chat_supervisor
from guide_relay.config import RelayConfig
from guide_relay.errors import raise_for_response
from guide_relay.relay import RelayService
from guide_relay.store import MemoryStore
from guide_relay.unread import UnreadTracker

T0 = datetime(2024, 5, 14, 12, 0)

NS = "demo/v0"
FAST = RelayConfig(settle_delay=timedelta(0), debounce=timedelta(0))


class InProcessRelay:
    """RelayClient stand-in that calls the service directly."""

    def __init__(self, service):
        self.service = service

    def call(self, mtype, **fields):
        resp = self.service.handle({"type": mtype, **fields})
        raise_for_response(resp)
        return resp


def make(user_id="me"):
    store = MemoryStore()
    channel = LocalChannel()
    ChangePublisher(store, channel, namespace=NS).start()
    out = []
    view = StaffChatView(UnreadTracker(user_id, last_view=T0), out=out.append)
    sup = chat_supervisor(channel, InProcessRelay(RelayService(store)), view, namespace=NS, config=FAST)
    return store, sup, view, out


def test_title_tracks_unread_messages_from_others():
    store, sup, view, out = make()
    sup.start(monitor=False)
    assert out == ["[chat] Staff chat"]

    store.write_message(sender_id="u2", sender_name="Aiko", sender_role="staff", message="hi", created_at=T0 + timedelta(minutes=1))
    store.write_message(sender_id="me", sender_role="staff", message="mine", created_at=T0 + timedelta(minutes=2))

    assert out[1:] == ["[chat] Aiko: hi", "[chat] (1) Staff chat", "[chat] me: mine"]
    assert view.tracker.count == 1

    view.mark_as_read()
    assert out[-1] == "[chat] Staff chat"
    sup.refresh()
    assert view.tracker.count == 0
    assert out[-1] == "[chat] Staff chat"


def test_reconnect_recounts_from_history():
    store, sup, view, out = make()
    store.write_message(sender_id="u2", sender_role="staff", message="a", created_at=T0 + timedelta(minutes=1))
    store.write_message(sender_id="u3", sender_role="staff", message="b", created_at=T0 + timedelta(minutes=2))
    store.write_message(sender_id="u2", sender_role="staff", message="old", created_at=T0 - timedelta(minutes=1))

    sup.start(monitor=False)
    assert view.tracker.count == 2
    assert out == ["[chat] (2) Staff chat"]

    sup.channel.drop()
    sup.channel.restore()
    assert sup.rebuild_count == 2
    assert view.tracker.count == 2


def test_chat_over_mqtt_counts_messages_from_others(live_relay, wait_until):
    from guide_relay.channel import MqttChannel
    from guide_relay.relay import RelayClient

    _, connect = live_relay
    client = connect("chat-me")
    relay = RelayClient(client, namespace=NS, timeout=2.0)
    relay.start()
    out = []
    view = StaffChatView(UnreadTracker("me"), out=out.append)
    sup = chat_supervisor(MqttChannel(client), relay, view, namespace=NS, config=FAST)
    sup.start()
    try:
        other = RelayClient(connect("chat-u2"), namespace=NS, timeout=2.0)
        other.start()
        other.call("send_chat", sender_id="u2", sender_role="staff", sender_name="Aiko", message="hello")

        assert wait_until(lambda: "[chat] (1) Staff chat" in out)
        assert "[chat] Aiko: hello" in out
    finally:
        sup.stop()
