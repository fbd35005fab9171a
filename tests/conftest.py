import queue
import threading
import time
from datetime import datetime, timedelta

import paho.mqtt.client as paho
import pytest

from guide_relay.store import MemoryStore

T0 = datetime(2024, 5, 14, 12, 0)


class FakeClock:
    """Settable wall clock for code that takes `clock=`."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


class FakeMqtt:
    """Duck-typed MqttClient: records publishes, delivers only on `deliver()`."""

    def __init__(self, client_id: str = "test") -> None:
        self.client_id = client_id
        self.connected = True
        self.published = []
        self.subscribed = []
        self._handlers = []
        self._status_listeners = []

    def add_handler(self, handler):
        self._handlers.append(handler)

    def remove_handler(self, handler):
        self._handlers.remove(handler)

    def add_status_listener(self, listener):
        self._status_listeners.append(listener)

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def unsubscribe(self, topic):
        self.subscribed.remove(topic)

    def publish(self, topic, message, *, retain=False):
        self.published.append((topic, message))

    def deliver(self, topic, message):
        for h in list(self._handlers):
            h(topic, message)


@pytest.fixture
def mqtt():
    return FakeMqtt()


# -------------------- threaded paho stand-in --------------------
#
# Same contract as paho-mqtt's `Client` with `loop_start()`: every client has
# one network thread, and it alone runs on_connect and on_message. A callback
# that blocks waiting for another message to the same client stalls that client.


class _Message:
    def __init__(self, topic, payload):
        self.topic = topic
        self.payload = payload


class _ReasonCode:
    is_failure = False

    def __str__(self):
        return "Success"


class _PublishInfo:
    rc = paho.MQTT_ERR_SUCCESS


class FakeBroker:
    def __init__(self):
        self._clients = []
        self._lock = threading.Lock()

    def attach(self, client):
        with self._lock:
            self._clients.append(client)

    def detach(self, client):
        with self._lock:
            if client in self._clients:
                self._clients.remove(client)

    def route(self, topic, payload):
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            if client.wants(topic):
                client.inbox.put(_Message(topic, payload))


class ThreadedPahoClient:
    broker = None

    def __init__(self, callback_api_version, client_id="", clean_session=True):
        self.client_id = client_id
        self.on_message = None
        self.on_connect = None
        self.on_disconnect = None
        self.inbox = queue.Queue()
        self._subs = set()
        self._lock = threading.Lock()
        self._thread = None

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        pass

    def connect(self, host, port=1883, keepalive=60):
        self.broker.attach(self)

    def disconnect(self):
        self.broker.detach(self)

    def loop_start(self):
        self._thread = threading.Thread(target=self._loop, name=f"paho-{self.client_id}", daemon=True)
        self._thread.start()

    def loop_stop(self):
        self.inbox.put(None)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)

    def subscribe(self, topic, qos=0):
        with self._lock:
            self._subs.add(topic)
        return paho.MQTT_ERR_SUCCESS, 1

    def unsubscribe(self, topic):
        with self._lock:
            self._subs.discard(topic)
        return paho.MQTT_ERR_SUCCESS, 1

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.broker.route(topic, payload)
        return _PublishInfo()

    def wants(self, topic):
        with self._lock:
            return any(paho.topic_matches_sub(sub, topic) for sub in self._subs)

    def _loop(self):
        if self.on_connect is not None:
            self.on_connect(self, None, {}, _ReasonCode(), None)
        while True:
            msg = self.inbox.get()
            if msg is None:
                return
            if self.on_message is not None:
                self.on_message(self, None, msg)


@pytest.fixture
def broker(monkeypatch):
    """Real MqttClient objects talking through an in-process broker."""
    b = FakeBroker()
    monkeypatch.setattr(ThreadedPahoClient, "broker", b)
    monkeypatch.setattr(paho, "Client", ThreadedPahoClient)
    return b


def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


NAMESPACE = "demo/v0"


@pytest.fixture
def live_relay(broker):
    """A relay on the in-process broker. `connect(name)` returns a started MqttClient."""
    from guide_relay.mqtt_client import MqttClient
    from guide_relay.relay import MqttRelayService, RelayService

    clients = []

    def connect(name):
        client = MqttClient(client_id=name, host="broker.test", port=1883)
        client.start()
        clients.append(client)
        assert _wait_until(lambda: client.connected)
        return client

    service = RelayService(MemoryStore())
    adapter = MqttRelayService(mqtt=connect("relay"), service=service, namespace=NAMESPACE)
    adapter.start()
    yield service, connect
    adapter.stop()
    for client in clients:
        client.stop()
