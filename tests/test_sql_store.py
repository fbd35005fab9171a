import threading
from datetime import datetime, timedelta

import pytest

from guide_relay.config import FIRST_TIME_GUEST, RelayConfig
from guide_relay.errors import KindDisabled
from guide_relay.ledger import RequestLedger
from guide_relay.lifecycle import RequestLifecycleEngine
from guide_relay.sql_store import SqlStore

T0 = datetime(2024, 5, 14, 12, 0)


@pytest.fixture
def sql_store():
    return SqlStore("sqlite://")


def test_write_and_read_requests(sql_store):
    msg = sql_store.write_message(
        sender_id="S1", sender_role="customer", message="hello", created_at=T0, message_type="status_request", kind=FIRST_TIME_GUEST
    )
    req = sql_store.write_request(
        store_id="S1",
        kind=FIRST_TIME_GUEST,
        message="hello",
        created_at=T0,
        expires_at=T0 + timedelta(hours=1),
        announcement_ref=msg.id,
    )
    assert req.id is not None
    assert sql_store.get_request(req.id) == req
    assert sql_store.find_request_by_announcement(msg.id) == req

    assert sql_store.read_requests("S1", FIRST_TIME_GUEST, T0, T0 + timedelta(seconds=1)) == [req]
    # Half-open on the end.
    assert sql_store.read_requests("S1", None, T0 - timedelta(hours=1), T0) == []
    assert sql_store.read_requests("S2", None, T0, T0 + timedelta(days=1)) == []


def test_conditional_consume_flips_once(sql_store):
    events = []
    sql_store.add_listener(events.append)
    req = sql_store.write_request(
        store_id="S1",
        kind=FIRST_TIME_GUEST,
        message="m",
        created_at=T0,
        expires_at=T0 + timedelta(hours=1),
        announcement_ref=None,
    )
    assert sql_store.consume_request(req.id, T0 + timedelta(minutes=30)) is True
    assert sql_store.consume_request(req.id, T0 + timedelta(minutes=31)) is False
    assert sql_store.consume_request(9999, T0) is False

    stored = sql_store.get_request(req.id)
    assert stored.is_consumed
    assert stored.consumed_at == T0 + timedelta(minutes=30)
    assert [e.op for e in events] == ["INSERT", "UPDATE"]
    assert events[1].old["is_consumed"] is False


def test_messages_newest_first_and_after_id(sql_store):
    ids = [
        sql_store.write_message(sender_id="u1", sender_role="staff", message=f"m{i}", created_at=T0 + timedelta(minutes=i)).id
        for i in range(5)
    ]
    latest = sql_store.read_messages(2)
    assert [m.id for m in latest] == [ids[4], ids[3]]
    assert [m.id for m in sql_store.read_messages(10, after_id=ids[2])] == [ids[4], ids[3]]

    sql_store.delete_message(ids[4])
    assert sql_store.read_messages(1)[0].id == ids[3]
    # Deleting a missing row is a no-op.
    sql_store.delete_message(ids[4])


def test_ledger_and_engine_on_sql(sql_store):
    now = {"t": T0}
    config = RelayConfig(monthly_quota_by_kind={FIRST_TIME_GUEST: 1})
    ledger = RequestLedger(sql_store, config, clock=lambda: now["t"])
    engine = RequestLifecycleEngine(sql_store, config, clock=lambda: now["t"])

    req = ledger.create_request("S1", FIRST_TIME_GUEST)
    with pytest.raises(KindDisabled):
        ledger.create_request("S1", "vip")

    report, consumed = engine.record_visit("S1", "staff-1", 2, guided_at=T0 + timedelta(minutes=30))
    assert consumed.id == req.id
    assert consumed.consumed_at == T0 + timedelta(minutes=30)
    assert sql_store.read_visit_reports("S1", T0, T0 + timedelta(hours=1)) == [report]
    assert sql_store.read_visit_reports(None, T0, T0 + timedelta(hours=1))[0].guest_count == 2


def test_ping(sql_store):
    sql_store.ping()


def test_concurrent_consumers_on_a_file_database_flip_once(tmp_path):
    store = SqlStore(f"sqlite:///{tmp_path / 'race.db'}")
    msg = store.write_message(sender_id="S1", sender_role="customer", message="hi", created_at=T0, message_type="status_request")
    req = store.write_request(
        store_id="S1",
        kind=FIRST_TIME_GUEST,
        message="hi",
        created_at=T0,
        expires_at=T0 + timedelta(hours=1),
        announcement_ref=msg.id,
    )
    events = []
    store.add_listener(events.append)

    n = 8
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def consume(i):
        barrier.wait()
        ok = store.consume_request(req.id, T0 + timedelta(minutes=i))
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=consume, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == n
    assert results.count(True) == 1
    assert store.get_request(req.id).is_consumed
    assert [e.op for e in events] == ["UPDATE"]
