import json
import logging
from contextlib import contextmanager

import httpx
import pytest

from chat_core.agents.orchestrator import ChatOrchestrator, IMAGE_ONLY_TEXT
from chat_core.conversation.reconciler import ConversationReconciler
from chat_core.domain.exceptions import (
    PersistenceError,
    TransportError,
    TurnInProgress,
    UpstreamError,
    ValidationError,
)
from chat_core.domain.models import TurnState
from chat_core.infrastructure.logging.logger import JsonFormatter
from chat_core.streaming.accumulator import IMAGE_CAPTION


def sse(content):
    return ('data: {"choices":[{"delta":{"content":"%s"}}]}\n' % content).encode()


DONE = b"data: [DONE]\n"


class MemoryStore:
    def __init__(self):
        self.saved = []
        self.fail = False

    def load_all(self):
        return list(self.saved)

    def save_all(self, conversations):
        if self.fail:
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        self.saved = list(conversations)

    def load_messages(self, conversation_id):
        return []


class FakeProvider:
    name = "fake"

    def __init__(self, chunks=(), error=None, image=None):
        self.chunks = chunks
        self.error = error
        self.image = image
        self.payloads = []
        self.closed = 0

    @contextmanager
    def open_stream(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        try:
            yield iter(self.chunks() if callable(self.chunks) else self.chunks)
        finally:
            self.closed += 1

    def generate_image(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.image


def make(provider, store=None):
    store = store or MemoryStore()
    reconciler = ConversationReconciler(store)
    orch = ChatOrchestrator(reconciler, provider)
    events = {"delta": [], "failed": [], "state": [], "changed": []}
    orch.events.subscribe("streaming_delta", events["delta"].append)
    orch.events.subscribe("turn_failed", events["failed"].append)
    orch.events.subscribe("state_changed", events["state"].append)
    orch.events.subscribe("message_list_changed", events["changed"].append)
    return orch, store, events


def test_hello_scenario():
    provider = FakeProvider([sse("Hi"), sse(" there"), DONE])
    orch, store, events = make(provider)
    seen_titles = []
    orch.events.subscribe(
        "message_list_changed",
        lambda cid: seen_titles.append(orch.reconciler.get(cid).title),
    )
    result = orch.send("Hello")
    assert seen_titles[0] == "New Chat"
    assert result.assistant_message.content == "Hi there"
    assert result.conversation.title == "Hello"
    assert [m.content for m in result.conversation.messages] == ["Hello", "Hi there"]
    assert [m.content for m in events["delta"]] == ["Hi", "Hi there"]
    assert events["state"] == [
        TurnState.SENDING,
        TurnState.STREAMING,
        TurnState.COMMITTING,
        TurnState.IDLE,
    ]
    assert events["failed"] == []
    assert store.saved[0].messages[-1].content == "Hi there"
    assert provider.payloads[0]["messages"] == [{"role": "user", "content": "Hello"}]
    assert provider.closed == 1
    assert orch.state == TurnState.IDLE


def test_history_is_sent_with_each_turn_and_reuses_active_conversation():
    provider = FakeProvider([sse("ok"), DONE])
    orch, _, _ = make(provider)
    first = orch.send("one", image_ref="https://img/a.png")
    second = orch.send("two")
    assert second.conversation.id == first.conversation.id
    sent = provider.payloads[1]["messages"]
    assert [m["role"] for m in sent] == ["user", "assistant", "user"]
    assert isinstance(sent[0]["content"], list)
    assert sent[1]["content"] == "ok"
    assert sent[2]["content"] == "two"
    assert len(second.conversation.messages) == 4


def test_zero_fragments_still_commits_empty_assistant_message():
    orch, store, _ = make(FakeProvider([DONE]))
    result = orch.send("anything?")
    assert result.assistant_message.content == ""
    assert [m.role for m in store.saved[0].messages] == ["user", "assistant"]


def test_malformed_event_is_skipped():
    chunks = [sse("a"), b"data: {broken\n", sse("b"), DONE]
    orch, _, events = make(FakeProvider(chunks))
    result = orch.send("q")
    assert result.assistant_message.content == "ab"
    assert result.decode_errors == 1
    assert events["failed"] == []


def test_connection_drop_commits_partial_content_without_failure():
    def chunks():
        yield sse("Partial")
        raise httpx.RemoteProtocolError("peer closed connection")

    orch, store, events = make(FakeProvider(chunks))
    result = orch.send("tell me")
    assert result.interrupted
    assert not result.cancelled
    assert result.assistant_message.content == "Partial"
    assert store.saved[0].messages[-1].content == "Partial"
    assert events["failed"] == []


def test_stream_without_done_commits_partial_content():
    orch, _, events = make(FakeProvider([sse("Partial")]))
    result = orch.send("tell me")
    assert result.interrupted
    assert result.assistant_message.content == "Partial"
    assert events["failed"] == []


def test_send_while_streaming_is_rejected():
    holder = {}

    def chunks():
        yield sse("first")
        with pytest.raises(TurnInProgress):
            holder["orch"].send("second")
        holder["state"] = holder["orch"].state
        yield sse(" part")
        yield DONE

    orch, _, _ = make(FakeProvider(chunks))
    holder["orch"] = orch
    result = orch.send("one")
    assert holder["state"] == TurnState.STREAMING
    assert result.assistant_message.content == "first part"
    assert [m.content for m in result.conversation.messages] == ["one", "first part"]


def test_upstream_error_keeps_user_message_and_returns_to_idle():
    error = UpstreamError(code="API_ERROR", message="Grok API error: 500", http_status=500)
    orch, store, events = make(FakeProvider(error=error))
    with pytest.raises(UpstreamError):
        orch.send("hello?")
    assert events["failed"] == [error]
    assert TurnState.FAILED in events["state"]
    assert orch.state == TurnState.IDLE
    msgs = orch.reconciler.active_messages()
    assert [(m.role, m.content) for m in msgs] == [("user", "hello?")]
    assert store.saved == []
    # 失败后可以立即开始新一轮
    orch._provider_client = FakeProvider([sse("fine"), DONE])
    result = orch.send("again")
    assert [m.role for m in result.conversation.messages] == ["user", "user", "assistant"]


def test_transport_error_before_any_byte_fails_turn():
    def chunks():
        raise httpx.ConnectError("reset")
        yield b""  # pragma: no cover

    orch, _, events = make(FakeProvider(chunks))
    with pytest.raises(TransportError):
        orch.send("hi")
    assert len(events["failed"]) == 1
    assert orch.reconciler.active_messages()[-1].role == "user"


def test_persistence_error_surfaces_but_keeps_conversation():
    store = MemoryStore()
    store.fail = True
    orch, _, events = make(FakeProvider([sse("ok"), DONE]), store)
    with pytest.raises(PersistenceError):
        orch.send("hi")
    assert len(events["failed"]) == 1
    assert [m.content for m in orch.reconciler.active_messages()] == ["hi", "ok"]
    assert orch.state == TurnState.IDLE


def test_cancel_commits_partial_content():
    holder = {}

    def chunks():
        yield sse("so far")
        assert holder["orch"].cancel()
        yield sse(" never")
        yield DONE

    provider = FakeProvider(chunks)
    orch, _, events = make(provider)
    holder["orch"] = orch
    result = orch.send("long answer please")
    assert result.cancelled and result.interrupted
    assert result.assistant_message.content == "so far"
    assert provider.closed == 1
    assert events["failed"] == []
    assert orch.cancel() is False


def test_image_generation_path():
    provider = FakeProvider(image={"data": [{"url": "https://img/fox.png"}]})
    orch, store, _ = make(provider)
    result = orch.send("a red fox", generate_image=True)
    assert provider.payloads == [{
        "model": "grok-2-image",
        "messages": [{"role": "user", "content": "a red fox"}],
        "generateImage": True,
    }]
    assert result.assistant_message.image_ref == "https://img/fox.png"
    assert result.assistant_message.content == IMAGE_CAPTION
    assert result.conversation.title == "Image Generation"
    assert store.saved[0].messages[-1].image_ref == "https://img/fox.png"


def test_input_validation():
    orch, _, _ = make(FakeProvider([DONE]))
    with pytest.raises(ValidationError):
        orch.send("   ")
    result = orch.send("  ", image_ref="https://img/a.png")
    assert result.user_message.content == IMAGE_ONLY_TEXT
    huge = "data:image/png;base64," + "A" * (8 * 1024 * 1024)
    with pytest.raises(ValidationError) as exc:
        orch.send("look", image_ref=huge)
    assert exc.value.code == "IMAGE_TOO_LARGE"
    assert orch.state == TurnState.IDLE


def test_unknown_conversation_fails_turn():
    orch, store, events = make(FakeProvider([DONE]))
    with pytest.raises(ValidationError) as exc:
        orch.send("hi", conversation_id="missing")
    assert exc.value.code == "CONVERSATION_NOT_FOUND"
    assert events["failed"] == [exc.value]
    assert events["state"] == [TurnState.SENDING, TurnState.FAILED, TurnState.IDLE]
    assert orch.reconciler.list_conversations() == []
    assert store.saved == []


def test_unexpected_error_is_reported_as_turn_failed():
    orch, _, events = make(FakeProvider(error=RuntimeError("boom")))
    with pytest.raises(RuntimeError):
        orch.send("hi")
    assert [(e.code, e.message, e.http_status) for e in events["failed"]] == [("INTERNAL_ERROR", "boom", 500)]
    assert TurnState.FAILED in events["state"]
    assert orch.state == TurnState.IDLE
    assert [m.content for m in orch.reconciler.active_messages()] == ["hi"]


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.setFormatter(JsonFormatter())
        self.lines = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


def test_turn_logs_share_trace_id():
    handler = CaptureHandler()
    chat_logger = logging.getLogger("chat_core")
    chat_logger.addHandler(handler)
    try:
        orch, _, _ = make(FakeProvider([sse("a"), b"data: {broken\n", DONE]))
        first = orch.send("q1")
        orch.send("q2")
    finally:
        chat_logger.removeHandler(handler)

    by_msg = {}
    for line in handler.lines:
        by_msg.setdefault(line["msg"], []).append(line)
    completed = by_msg["Completed turn"]
    assert [line["conversation_id"] for line in completed] == [first.conversation.id] * 2
    trace_ids = [line["trace_id"] for line in completed]
    assert trace_ids[0] != trace_ids[1]
    # 存储层与解码层的日志也带上所在轮次的 trace_id
    assert [line["trace_id"] for line in by_msg["Stored assistant message"]] == trace_ids
    assert [line["trace_id"] for line in by_msg["Skipped malformed stream event"]] == trace_ids
    assert [line["trace_id"] for line in by_msg["Created new conversation"]] == trace_ids[:1]
