import threading

import pytest

from pubsubkit.message import Message
from pubsubkit.subscription import DEFAULT_BUFFER_SIZE, Subscription


def test_topic():
    assert Subscription("foo").topic == "foo"


def test_deliver_then_next_returns_in_order():
    sub = Subscription("foo")
    first, second = Message(data=b"1"), Message(data=b"2")
    assert sub._deliver(first)
    assert sub._deliver(second)
    assert sub.next(timeout=1) is first
    assert sub.next(timeout=1) is second


def test_next_times_out():
    with pytest.raises(TimeoutError):
        Subscription("foo").next(timeout=0.05)


def test_next_waits_for_delivery():
    sub = Subscription("foo")
    msg = Message(data=b"late")
    timer = threading.Timer(0.05, sub._deliver, args=(msg,))
    timer.start()
    try:
        assert sub.next(timeout=2) is msg
    finally:
        timer.cancel()


def test_buffer_full_refuses_messages():
    sub = Subscription("foo", buffer_size=2)
    results = [sub._deliver(Message(data=bytes([i]))) for i in range(3)]
    assert results == [True, True, False]


def test_default_buffer_size():
    sub = Subscription("foo")
    accepted = sum(sub._deliver(Message()) for _ in range(DEFAULT_BUFFER_SIZE + 1))
    assert accepted == DEFAULT_BUFFER_SIZE == 32


def test_closed_drains_then_returns_none():
    sub = Subscription("foo")
    msg = Message(data=b"x")
    sub._deliver(msg)
    sub.close()
    assert sub.next(timeout=1) is msg
    assert sub.next(timeout=1) is None


def test_closed_with_error_raises_it():
    sub = Subscription("foo")
    sub.error = RuntimeError("subscription cancelled")
    sub.close()
    with pytest.raises(RuntimeError, match="subscription cancelled"):
        sub.next(timeout=1)


def test_close_is_idempotent_and_refuses_delivery():
    sub = Subscription("foo")
    sub.close()
    sub.close()
    assert sub._deliver(Message()) is False
    assert sub.next(timeout=0.1) is None


def test_cancel_calls_owner():
    cancelled = []
    sub = Subscription("foo", on_cancel=cancelled.append)
    sub.cancel()
    assert cancelled == [sub]
    assert sub._deliver(Message()) is True


def test_cancel_without_owner_closes():
    sub = Subscription("foo")
    sub.cancel()
    assert sub.next(timeout=0.1) is None


def test_iteration_stops_when_closed():
    sub = Subscription("foo")
    msgs = [Message(data=b"a"), Message(data=b"b")]
    for msg in msgs:
        sub._deliver(msg)
    sub.close()
    assert list(sub) == msgs