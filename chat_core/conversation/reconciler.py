"""会话协调器。

持有全部会话的内存工作副本与当前活动会话，决定会话身份（沿用已有 / 新建），
计算会话标题，并在每轮结束时把整个会话列表一次性写入存储。

约束：
- 用户消息在发送时立即追加到工作副本（早于任何网络请求），请求失败也不会丢失。
- 同一会话的 messages 严格按 start_turn / complete_turn 调用顺序排列。
- complete_turn 对同一条助手消息至多生效一次。
- 写入失败（PersistenceError）向上抛出，但不回滚内存中的会话。
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.events import ChatEvents
from chat_core.domain.exceptions import PersistenceError, ValidationError
from chat_core.domain.models import DEFAULT_TITLE, Conversation, Message, utcnow
from chat_core.infrastructure.logging.logger import logger


IMAGE_TITLE = "Image Generation"


class ConversationReconciler:
    def __init__(
        self,
        store: ConversationStore,
        events: Optional[ChatEvents] = None,
        cfg=settings,
    ):
        self._store = store
        self._events = events or ChatEvents()
        self._settings = cfg
        self._lock = threading.RLock()
        self._conversations: List[Conversation] = list(store.load_all())
        # 消息已在内存中的会话；其余会话的消息在首次使用时经 load_messages 补全
        self._hydrated: Set[str] = {c.id for c in self._conversations if c.messages}
        self._active_id: Optional[str] = None
        # conversation_id -> 本轮用户消息 ID
        self._pending: Dict[str, str] = {}

    @property
    def events(self) -> ChatEvents:
        return self._events

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    # ---- 单轮对话 ----

    def start_turn(
        self,
        conversation_id: Optional[str],
        user_text: str,
        image_ref: Optional[str] = None,
    ) -> str:
        """登记本轮用户消息，返回会话 ID（必要时新建会话）。"""

        with self._lock:
            if conversation_id is None:
                conv = Conversation(id=f"c-{uuid4().hex}", title=DEFAULT_TITLE)
                self._conversations.insert(0, conv)
                self._hydrated.add(conv.id)
                self._log(logging.INFO, "Created new conversation", conversation_id=conv.id)
            else:
                conv = self._hydrate(self._require(conversation_id))
            user_msg = Message(
                id=f"m-{uuid4().hex}",
                role="user",
                content=user_text,
                image_ref=image_ref,
            )
            conv.messages.append(user_msg)
            self._pending[conv.id] = user_msg.id
            self._active_id = conv.id
            self._log(logging.INFO, "Stored user message", conversation_id=conv.id, message_id=user_msg.id)
        self._events.emit("message_list_changed", conv.id)
        return conv.id

    def complete_turn(
        self,
        conversation_id: str,
        assistant_message: Message,
        image_generation: bool = False,
    ) -> Conversation:
        """追加助手消息、更新标题与时间，并整体写入存储。"""

        with self._lock:
            conv = self._hydrate(self._require(conversation_id))
            if any(m.id == assistant_message.id for m in conv.messages):
                self._log(
                    logging.INFO,
                    "Assistant message already committed",
                    conversation_id=conv.id,
                    message_id=assistant_message.id,
                )
                return self._copy(conv)
            first_exchange = not any(m.role == "assistant" for m in conv.messages)
            user_msg = self._pending_user_message(conv)
            conv.messages.append(assistant_message)
            if first_exchange:
                conv.title = self._derive_title(user_msg, image_generation)
            conv.updated_at = utcnow()
            self._pending.pop(conv.id, None)
            snapshot = self._copy(conv)
            save_error: Optional[PersistenceError] = None
            try:
                self._save()
            except PersistenceError as e:
                save_error = e
        self._events.emit("message_list_changed", conversation_id)
        if save_error is not None:
            raise save_error
        self._log(
            logging.INFO,
            "Stored assistant message",
            conversation_id=conversation_id,
            message_id=assistant_message.id,
            message_count=len(snapshot.messages),
        )
        return snapshot

    def abort_turn(self, conversation_id: str) -> None:
        """本轮失败：保留用户消息，仅清除进行中标记。"""

        with self._lock:
            user_message_id = self._pending.pop(conversation_id, None)
        self._log(
            logging.WARNING,
            "Turn aborted, user message retained",
            conversation_id=conversation_id,
            message_id=user_message_id,
        )

    def retry_save(self) -> None:
        """PersistenceError 之后由调用方重试写入。"""

        with self._lock:
            self._save()

    # ---- 会话管理 ----

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            return [self._copy(c) for c in self._conversations]

    def get(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._copy(self._hydrate(self._require(conversation_id)))

    def active_messages(self) -> List[Message]:
        with self._lock:
            if self._active_id is None:
                return []
            return list(self._hydrate(self._require(self._active_id)).messages)

    def select(self, conversation_id: str) -> Conversation:
        with self._lock:
            conv = self._hydrate(self._require(conversation_id))
            self._active_id = conv.id
            snapshot = self._copy(conv)
        self._events.emit("message_list_changed", conversation_id)
        return snapshot

    def new_chat(self) -> None:
        with self._lock:
            self._active_id = None

    def rename(self, conversation_id: str, title: str) -> Conversation:
        title = (title or "").strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="Title must not be empty")
        with self._lock:
            conv = self._hydrate(self._require(conversation_id))
            conv.title = title
            self._save()
            return self._copy(conv)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            conv = self._require(conversation_id)
            self._conversations.remove(conv)
            self._hydrated.discard(conversation_id)
            self._pending.pop(conversation_id, None)
            if self._active_id == conversation_id:
                self._active_id = None
            self._save()
        self._log(logging.INFO, "Deleted conversation", conversation_id=conversation_id)
        self._events.emit("message_list_changed", conversation_id)

    def clear_all(self) -> None:
        with self._lock:
            self._conversations.clear()
            self._hydrated.clear()
            self._pending.clear()
            self._active_id = None
            self._save()
        self._log(logging.INFO, "Cleared all conversations")

    # ---- 辅助方法 ----

    def _require(self, conversation_id: str) -> Conversation:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        raise ValidationError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)

    def _hydrate(self, conv: Conversation) -> Conversation:
        if conv.id in self._hydrated:
            return conv
        loaded = self._store.load_messages(conv.id)
        conv.messages[:0] = loaded
        self._hydrated.add(conv.id)
        self._log(logging.INFO, "Loaded conversation messages", conversation_id=conv.id, message_count=len(loaded))
        return conv

    def _pending_user_message(self, conv: Conversation) -> Optional[Message]:
        pending_id = self._pending.get(conv.id)
        for msg in reversed(conv.messages):
            if pending_id is None and msg.role == "user":
                return msg
            if msg.id == pending_id:
                return msg
        return None

    def _derive_title(self, user_msg: Optional[Message], image_generation: bool) -> str:
        if image_generation:
            return IMAGE_TITLE
        text = (user_msg.content if user_msg else "").strip()
        return text[: self._settings.title_max_chars] or DEFAULT_TITLE

    def _save(self) -> None:
        try:
            # save_all 整体重写，写入前必须补全所有会话的消息
            for conv in self._conversations:
                self._hydrate(conv)
            self._store.save_all([self._copy(c) for c in self._conversations])
        except PersistenceError as e:
            self._log(logging.ERROR, "Failed to persist conversations", code=e.code, error=e.message)
            raise

    @staticmethod
    def _copy(conv: Conversation) -> Conversation:
        return replace(conv, messages=list(conv.messages))

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        logger.log(level, message, extra={"extra": fields})
