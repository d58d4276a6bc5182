from typing import List, Protocol, Sequence

from .models import Conversation, Message


class ConversationStore(Protocol):
    """会话持久化协议（与具体存储技术无关）。

    - load_all: 按顺序返回全部会话。
    - save_all: 一次性写入全部会话，失败时抛出 PersistenceError。
    - load_messages: 读取单个会话的消息（面向消息单独存储的后端）。
    """

    def load_all(self) -> List[Conversation]:
        ...

    def save_all(self, conversations: Sequence[Conversation]) -> None:
        ...

    def load_messages(self, conversation_id: str) -> List[Message]:
        ...
