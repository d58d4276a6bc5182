import pytest

from chat_core.domain.events import ChatEvents


def test_subscribe_emit_and_unsubscribe():
    events = ChatEvents()
    got = []
    unsubscribe = events.subscribe("turn_failed", got.append)
    events.emit("turn_failed", "boom")
    unsubscribe()
    events.emit("turn_failed", "ignored")
    assert got == ["boom"]


def test_failing_listener_does_not_block_others():
    events = ChatEvents()
    got = []

    def broken(_):
        raise RuntimeError("listener bug")

    events.subscribe("streaming_delta", broken)
    events.subscribe("streaming_delta", got.append)
    events.emit("streaming_delta", 1)
    assert got == [1]


def test_unknown_event_kind():
    with pytest.raises(ValueError):
        ChatEvents().subscribe("nope", print)
