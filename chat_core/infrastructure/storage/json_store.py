import json
import os
from pathlib import Path
from typing import List, Sequence
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import Conversation, Message
from chat_core.domain.exceptions import PersistenceError


class JsonConversationStore(ConversationStore):
    """把全部会话保存在单个 conversations.json 文档中。

    save_all 先写临时文件再 os.replace，保证读者看到的要么是旧文档，要么是新文档。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "conversations.json"

    def load_all(self) -> List[Conversation]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        if not isinstance(data, list):
            raise PersistenceError(code="STORE_READ_ERROR", message="conversations.json is not a list")
        items: List[Conversation] = []
        for index, raw in enumerate(data):
            try:
                items.append(Conversation.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                # save_all 会整体重写文档，跳过坏条目等于删除它
                raise PersistenceError(
                    code="STORE_READ_ERROR",
                    message=f"Malformed conversation entry at index {index}: {e!r}",
                )
        return items

    def save_all(self, conversations: Sequence[Conversation]) -> None:
        tmp_path = self._root / f"conversations.{uuid4().hex}.json.tmp"
        payload = [c.to_dict() for c in conversations]
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def load_messages(self, conversation_id: str) -> List[Message]:
        for conv in self.load_all():
            if conv.id == conversation_id:
                return list(conv.messages)
        raise PersistenceError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
