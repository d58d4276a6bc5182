"""出站请求体构造。

消息内容在序列化边界上是一个显式的标签联合：

- TextOnly(text): 纯文本消息，content 为字符串。
- TextWithImage(text, image_ref): 带图片的消息，content 为多段数组
  （text 段 + image_url 段）。

格式按消息逐条决定：同一请求里可以同时出现两种形式。
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Union

from chat_core.domain.models import Message
from chat_core.providers.registry import ModelConfig


@dataclass(frozen=True)
class TextOnly:
    text: str


@dataclass(frozen=True)
class TextWithImage:
    text: str
    image_ref: str


WireContent = Union[TextOnly, TextWithImage]


def wire_content(message: Message) -> WireContent:
    if message.image_ref:
        return TextWithImage(text=message.content, image_ref=message.image_ref)
    return TextOnly(text=message.content)


def message_to_payload(message: Message) -> Dict[str, Any]:
    content = wire_content(message)
    if isinstance(content, TextWithImage):
        return {
            "role": message.role,
            "content": [
                {"type": "text", "text": content.text},
                {"type": "image_url", "image_url": {"url": content.image_ref}},
            ],
        }
    return {"role": message.role, "content": content.text}


def build_chat_payload(messages: Sequence[Message], model_cfg: ModelConfig) -> Dict[str, Any]:
    """构造流式对话请求：完整历史 + 本轮用户消息。"""

    msgs: List[Dict[str, Any]] = [message_to_payload(m) for m in messages]
    return {
        "model": model_cfg.provider_model,
        "messages": msgs,
        "stream": True,
        "temperature": model_cfg.default_temperature,
    }


def build_image_payload(prompt: str, model_cfg: ModelConfig) -> Dict[str, Any]:
    """构造图片生成请求：只携带本轮提示词，不携带历史。"""

    return {
        "model": model_cfg.provider_model,
        "messages": [{"role": "user", "content": prompt}],
        "generateImage": True,
    }
