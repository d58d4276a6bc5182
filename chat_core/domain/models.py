"""统一的对话数据模型。

本模块定义了对话引擎内部共享的标准数据结构：

- Message: 一条对话消息（user/assistant），可选携带图片引用。
- Conversation: 一个会话，包含按时间顺序排列、只追加的消息列表。
- StreamSession: 单轮流式响应期间的临时状态，提交或失败后丢弃。
- TurnState: 单轮对话的状态机状态。

持久化层与 UI 层都只依赖这些模型，序列化格式由 to_dict/from_dict 统一定义。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


# 消息角色类型（与 OpenAI / xAI 等厂商的 role 字段对应）
Role = Literal["user", "assistant"]

DEFAULT_TITLE = "New Chat"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    """将时间统一格式化为 ISO-8601 UTC（以 Z 结尾）。"""

    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass(frozen=True)
class Message:
    """一条对话消息。

    - id: 会话内唯一的消息 ID。
    - role: 消息角色，user 或 assistant。
    - content: 纯文本内容，流式进行中可能为空。
    - image_ref: 可选的图片引用（URL 或 data URL）。

    消息一旦持久化即不可变；流式进行中的助手消息通过生成新的快照来"增长"。
    """

    id: str
    role: Role
    content: str
    image_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "image_ref": self.image_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            image_ref=data.get("image_ref"),
        )


@dataclass
class Conversation:
    """一个会话。

    id 在首轮对话时分配，之后不再改变；messages 只追加不重排。
    """

    id: str
    title: str = DEFAULT_TITLE
    messages: List[Message] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "updated_at": format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            updated_at=parse_ts(data["updated_at"]) if data.get("updated_at") else utcnow(),
        )


@dataclass
class StreamSession:
    """单轮流式响应的临时状态。

    accumulated_text 只允许拼接，不允许截断或替换。
    """

    conversation_id: str
    assistant_message_id: str
    accumulated_text: str = ""
    image_ref: Optional[str] = None
    terminal: bool = False


class TurnState(str, Enum):
    """单轮对话状态：Idle -> Sending -> Streaming -> Committing -> Idle。

    FAILED 可由 SENDING/STREAMING 进入，最终总会回到 IDLE。
    """

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMMITTING = "committing"
    FAILED = "failed"
