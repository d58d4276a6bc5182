from chat_core.domain.models import Message
from chat_core.providers.registry import GROK_CONFIG
from chat_core.providers.serializer import (
    TextOnly,
    TextWithImage,
    build_chat_payload,
    build_image_payload,
    wire_content,
)


def test_wire_content_is_chosen_per_message():
    assert wire_content(Message(id="1", role="user", content="hi")) == TextOnly("hi")
    assert wire_content(Message(id="2", role="user", content="see", image_ref="u")) == TextWithImage("see", "u")


def test_chat_payload_mixes_plain_and_multipart_messages():
    history = [
        Message(id="1", role="user", content="what is this?", image_ref="data:image/png;base64,AAAA"),
        Message(id="2", role="assistant", content="a cat"),
        Message(id="3", role="user", content="thanks"),
    ]
    payload = build_chat_payload(history, GROK_CONFIG.models["chat"])
    assert payload["model"] == "grok-beta"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.7
    assert payload["messages"][0] == {
        "role": "user",
        "content": [
            {"type": "text", "text": "what is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ],
    }
    assert payload["messages"][1] == {"role": "assistant", "content": "a cat"}
    assert payload["messages"][2] == {"role": "user", "content": "thanks"}


def test_image_payload_carries_only_the_prompt():
    payload = build_image_payload("a red fox", GROK_CONFIG.models["image"])
    assert payload["messages"] == [{"role": "user", "content": "a red fox"}]
    assert payload["generateImage"] is True
    assert "stream" not in payload
