import pytest
from pydantic import BaseModel, ValidationError

from services.bus.bus import EventBus, event, payloads


class PingPayload(BaseModel):
    job_id: str
    count: int = 0


Ping = event("test.ping", PingPayload)
Pong = event("test.pong", PingPayload)


def test_publish_validates_and_delivers():
    bus = EventBus()
    received = []
    bus.subscribe(Ping, received.append)

    evt = bus.publish(Ping, {"job_id": "1", "count": 2})

    assert received == [evt]
    assert evt.type == "test.ping"
    assert evt.properties == PingPayload(job_id="1", count=2)


def test_invalid_payload_is_rejected():
    bus = EventBus()
    with pytest.raises(ValidationError):
        bus.publish(Ping, {"count": "not a number"})


def test_wildcard_sees_every_event_after_type_handlers():
    bus = EventBus()
    order = []
    bus.subscribe_all(lambda evt: order.append(("all", evt.type)))
    bus.subscribe(Ping, lambda evt: order.append(("ping", evt.type)))

    bus.publish(Ping, {"job_id": "1"})
    bus.publish(Pong, {"job_id": "1"})

    assert order == [("ping", "test.ping"), ("all", "test.ping"), ("all", "test.pong")]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(Ping, received.append)

    bus.publish(Ping, {"job_id": "1"})
    unsubscribe()
    unsubscribe()
    bus.publish(Ping, {"job_id": "2"})

    assert [evt.properties.job_id for evt in received] == ["1"]
    assert bus.subscriber_count("test.ping") == 0


def test_once_unsubscribes_on_truthy_return():
    bus = EventBus()
    seen = []

    def handler(evt):
        seen.append(evt.properties.job_id)
        return evt.properties.job_id == "2"

    bus.once(Ping, handler)
    for job_id in ("1", "2", "3"):
        bus.publish(Ping, {"job_id": job_id})

    assert seen == ["1", "2"]


def test_failing_handler_does_not_break_publisher(caplog):
    bus = EventBus()
    received = []

    def broken(evt):
        raise RuntimeError("handler bug")

    bus.subscribe(Ping, broken)
    bus.subscribe(Ping, received.append)

    bus.publish(Ping, {"job_id": "1"})

    assert len(received) == 1
    assert "Event handler failed" in caplog.text


def test_declared_events_are_listed():
    types = [definition.type for definition in payloads()]
    assert "test.ping" in types
    assert "test.pong" in types
