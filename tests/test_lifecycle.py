import threading
from datetime import timedelta

import pytest

from guide_relay.config import FIRST_TIME_GUEST, RelayConfig
from guide_relay.ledger import RequestLedger
from guide_relay.lifecycle import RequestLifecycleEngine
from guide_relay.models import RequestState, VisitReport


def _setup(store, clock, **config):
    cfg = RelayConfig(**config)
    return RequestLedger(store, cfg, clock=clock), RequestLifecycleEngine(store, cfg, clock=clock)


def test_visit_within_window_consumes_once(store, clock):
    ledger, engine = _setup(store, clock)
    t = clock.now
    req = ledger.create_request("S1", FIRST_TIME_GUEST)

    report, consumed = engine.record_visit("S1", "staff-1", guided_at=t + timedelta(minutes=30))
    assert consumed is not None
    assert consumed.id == req.id
    assert consumed.is_consumed
    assert consumed.consumed_at == t + timedelta(minutes=30)
    assert report.guided_at == t + timedelta(minutes=30)

    _, again = engine.record_visit("S1", "staff-2", guided_at=t + timedelta(minutes=31))
    assert again is None
    assert store.get_request(req.id).consumed_at == t + timedelta(minutes=30)


def test_unfulfilled_request_reads_as_expired_without_a_write(store, clock):
    ledger, engine = _setup(store, clock)
    t = clock.now
    req = ledger.create_request("S1", FIRST_TIME_GUEST)
    events = []
    store.add_listener(events.append)

    clock.now = t + timedelta(minutes=61)
    stored = store.get_request(req.id)
    assert engine.state_of(stored) is RequestState.EXPIRED
    assert ledger.state_of(stored) is RequestState.EXPIRED
    assert stored.is_consumed is False
    assert events == []


def test_visit_after_window_does_not_consume(store, clock):
    ledger, engine = _setup(store, clock)
    t = clock.now
    req = ledger.create_request("S1", FIRST_TIME_GUEST)

    _, consumed = engine.record_visit("S1", "staff-1", guided_at=t + timedelta(minutes=61))
    assert consumed is None
    assert not store.get_request(req.id).is_consumed


def test_visit_for_other_store_or_before_creation_does_not_consume(store, clock):
    ledger, engine = _setup(store, clock)
    t = clock.now
    req = ledger.create_request("S1", FIRST_TIME_GUEST)

    assert engine.record_visit("S2", "staff-1", guided_at=t + timedelta(minutes=5))[1] is None
    assert engine.record_visit("S1", "staff-1", guided_at=t - timedelta(minutes=5))[1] is None
    assert not store.get_request(req.id).is_consumed


def test_oldest_candidate_is_consumed_first(store, clock):
    ledger, engine = _setup(store, clock)
    t = clock.now
    first = ledger.create_request("S1", FIRST_TIME_GUEST)
    clock.advance(minutes=5)
    second = ledger.create_request("S1", FIRST_TIME_GUEST)

    _, consumed = engine.record_visit("S1", "staff-1", guided_at=t + timedelta(minutes=10))
    assert consumed.id == first.id
    _, consumed = engine.record_visit("S1", "staff-1", guided_at=t + timedelta(minutes=11))
    assert consumed.id == second.id


def test_non_consumable_kind_is_ignored(store, clock):
    ledger, engine = _setup(
        store,
        clock,
        monthly_quota_by_kind={FIRST_TIME_GUEST: 3, "notice": 5},
        consumable_kinds=frozenset({FIRST_TIME_GUEST}),
    )
    notice = ledger.create_request("S1", "notice")
    _, consumed = engine.record_visit("S1", "staff-1", guided_at=clock.now + timedelta(minutes=1))
    assert consumed is None
    assert not store.get_request(notice.id).is_consumed


def test_consume_is_idempotent(store, clock):
    ledger, _ = _setup(store, clock)
    req = ledger.create_request("S1", FIRST_TIME_GUEST)
    events = []
    store.add_listener(events.append)

    assert store.consume_request(req.id, clock.now) is True
    assert store.consume_request(req.id, clock.now + timedelta(minutes=1)) is False
    assert store.get_request(req.id).consumed_at == clock.now
    assert [e.op for e in events] == ["UPDATE"]


def test_concurrent_reports_consume_exactly_once(store, clock):
    ledger, engine = _setup(store, clock)
    req = ledger.create_request("S1", FIRST_TIME_GUEST)
    guided_at = clock.now + timedelta(minutes=3)

    transitions = []
    store.add_listener(lambda e: transitions.append(e) if e.op == "UPDATE" else None)

    barrier = threading.Barrier(8)
    results = []

    def visit(i):
        report = VisitReport(id=i, store_id="S1", staff_id=f"staff-{i}", guest_count=1, guided_at=guided_at)
        barrier.wait()
        results.append(engine.on_visit_report(report))

    threads = [threading.Thread(target=visit, args=(i,)) for i in range(8)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == req.id
    assert len(transitions) == 1
    assert transitions[0].old["is_consumed"] is False
    assert transitions[0].row["is_consumed"] is True


def test_negative_guest_count_rejected(store, clock):
    _, engine = _setup(store, clock)
    with pytest.raises(ValueError):
        engine.record_visit("S1", "staff-1", guest_count=-1)
