"""助手消息累积器。

每轮对话一个实例：助手消息 ID 在构造时生成一次（而不是每个增量生成一次），
之后每个增量都拼接到同一条消息上，并同步推送给观察者。
"""

from typing import Callable, Optional
from uuid import uuid4

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Message, StreamSession
from chat_core.streaming.delta import Delta, ImageDelta, TextDelta


# 图片生成结果随附的固定说明文字
IMAGE_CAPTION = "Here is the generated image:"


class MessageAccumulator:
    def __init__(
        self,
        conversation_id: str,
        on_update: Optional[Callable[[Message], None]] = None,
    ):
        self.session = StreamSession(
            conversation_id=conversation_id,
            assistant_message_id=f"m-{uuid4().hex}",
        )
        self._on_update = on_update
        self._message: Optional[Message] = None
        self._fragments = 0

    @property
    def message(self) -> Optional[Message]:
        """当前助手消息；收到第一个增量之前为 None。"""

        return self._message

    @property
    def fragment_count(self) -> int:
        return self._fragments

    def apply(self, delta: Delta) -> Message:
        if self.session.terminal:
            raise ValidationError(code="SESSION_TERMINAL", message="Stream session already finished")
        if isinstance(delta, TextDelta):
            self.session.accumulated_text += delta.text
        elif isinstance(delta, ImageDelta):
            self.session.image_ref = delta.image_ref
        else:
            raise ValidationError(code="UNKNOWN_DELTA", message=f"Unsupported delta: {delta!r}")
        self._fragments += 1
        self._message = self._build()
        if self._on_update is not None:
            self._on_update(self._message)
        return self._message

    def snapshot(self) -> Message:
        """返回当前助手消息；一个增量都没收到时返回空内容消息。"""

        return self._message or self._build()

    def finish(self) -> Message:
        self.session.terminal = True
        return self.snapshot()

    def _build(self) -> Message:
        if self.session.image_ref:
            content = IMAGE_CAPTION
        else:
            content = self.session.accumulated_text
        return Message(
            id=self.session.assistant_message_id,
            role="assistant",
            content=content,
            image_ref=self.session.image_ref,
        )
