import threading
from datetime import datetime, timedelta

from guide_relay.countdown import EXPIRED_TEXT, CountdownPresenter, format_remaining
from guide_relay.models import RequestState, StatusRequest

T0 = datetime(2024, 5, 14, 12, 0)


def _request(**kwargs):
    fields = dict(
        id=1,
        store_id="S1",
        kind="first_time_guest",
        message="m",
        created_at=T0,
        expires_at=T0 + timedelta(hours=1),
    )
    fields.update(kwargs)
    return StatusRequest(**fields)


def test_format_remaining():
    assert format_remaining(timedelta(minutes=59, seconds=5)) == "59:05"
    assert format_remaining(timedelta(hours=2)) == "120:00"
    assert format_remaining(timedelta(seconds=0.5)) == EXPIRED_TEXT
    assert format_remaining(timedelta(seconds=1.5)) == "0:01"
    assert format_remaining(timedelta(0)) == EXPIRED_TEXT


def test_active_request_counts_down():
    p = CountdownPresenter()
    view = p.render(_request(), T0 + timedelta(minutes=30, seconds=1))
    assert view.visible
    assert view.state is RequestState.ACTIVE
    assert view.urgent
    assert view.text == "29:59"


def test_expired_then_hidden():
    p = CountdownPresenter(completed_grace=timedelta(minutes=5))
    req = _request()
    view = p.render(req, req.expires_at)
    assert view.text == EXPIRED_TEXT
    assert view.state is RequestState.EXPIRED
    assert not view.urgent
    assert not p.render(req, req.expires_at + timedelta(minutes=6)).visible


def test_consumed_drops_urgency_and_hides_after_grace():
    p = CountdownPresenter(completed_grace=timedelta(minutes=5))
    done = T0 + timedelta(minutes=20)
    req = _request(is_consumed=True, consumed_at=done)

    view = p.render(req, done + timedelta(minutes=1))
    assert view.visible
    assert not view.urgent
    assert view.state is RequestState.CONSUMED
    assert view.text == "done 12:20"

    assert not p.render(req, done + timedelta(minutes=6)).visible


def test_no_request_is_hidden():
    assert not CountdownPresenter().render(None, T0).visible


def test_ticker_renders_from_source():
    now = {"t": T0}
    p = CountdownPresenter(clock=lambda: now["t"])
    views = []
    rendered = threading.Event()

    def on_render(view):
        views.append(view)
        rendered.set()

    p.start(_request, on_render, interval=0.01)
    assert rendered.wait(2.0)
    p.stop()
    assert views[0].text == "60:00"
