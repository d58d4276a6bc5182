"""对话编排核心模块。

串联单轮对话的全部阶段：构造请求、调用 provider、SSE 解码、增量解析、
消息累积，最后交给 ConversationReconciler 提交。

单轮状态机：IDLE -> SENDING -> STREAMING -> COMMITTING -> IDLE，
SENDING/STREAMING 阶段出错进入 FAILED，最终总会回到 IDLE。
同一时间只允许一轮在进行（单飞），并发的 send 直接拒绝而不排队。
"""

from dataclasses import dataclass
from typing import Any, Optional
from uuid import uuid4
import logging
import threading
import time

from chat_core.config.settings import settings
from chat_core.conversation.reconciler import ConversationReconciler
from chat_core.domain.events import ChatEvents
from chat_core.domain.exceptions import (
    BusinessError,
    StreamCancelled,
    StreamInterrupted,
    TurnInProgress,
    ValidationError,
)
from chat_core.domain.models import Conversation, Message, TurnState
from chat_core.infrastructure.logging.logger import bind_log_context, log_context, logger
from chat_core.providers.base import ProviderClient
from chat_core.providers.registry import get_provider_config
from chat_core.providers.serializer import build_chat_payload, build_image_payload
from chat_core.streaming.accumulator import MessageAccumulator
from chat_core.streaming.decoder import iter_sse_payloads
from chat_core.streaming.delta import DeltaParser, parse_image_response


# 只附带图片、没有文字时使用的默认文本
IMAGE_ONLY_TEXT = "Image attached"


@dataclass
class TurnResult:
    """一轮对话的结果。

    - interrupted: 流在 [DONE] 之前中断，assistant_message 为已累积的部分内容。
    - cancelled: 调用方主动放弃，同样提交了部分内容。
    - decode_errors: 本轮被跳过的异常事件数。
    """

    conversation: Conversation
    user_message: Message
    assistant_message: Message
    interrupted: bool = False
    cancelled: bool = False
    decode_errors: int = 0


class ChatOrchestrator:
    def __init__(
        self,
        reconciler: ConversationReconciler,
        provider_client: ProviderClient,
        events: Optional[ChatEvents] = None,
        cfg=settings,
    ):
        self._reconciler = reconciler
        self._provider_client = provider_client
        self._events = events or reconciler.events
        self._settings = cfg
        self._provider_cfg = get_provider_config(getattr(cfg, "default_provider", "grok"))
        self._flight = threading.Lock()
        self._state = TurnState.IDLE
        self._cancel_event: Optional[threading.Event] = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def events(self) -> ChatEvents:
        return self._events

    @property
    def reconciler(self) -> ConversationReconciler:
        return self._reconciler

    def send(
        self,
        text: str,
        image_ref: Optional[str] = None,
        conversation_id: Optional[str] = None,
        generate_image: bool = False,
    ) -> TurnResult:
        """发送一轮对话。

        Args:
            text: 用户输入（图片生成时作为提示词）
            image_ref: 可选的图片附件（URL 或 data URL）
            conversation_id: 会话ID（可选，不提供则沿用当前活动会话，没有则新建）
            generate_image: 是否走图片生成路径

        Raises:
            TurnInProgress: 已有一轮在进行中
            TransportError / UpstreamError: 请求失败，用户消息保留在会话中
            PersistenceError: 写入存储失败，内存中的会话保持不变
        """

        if not self._flight.acquire(blocking=False):
            raise TurnInProgress(code="TURN_IN_PROGRESS", message="A turn is already in progress", http_status=409)
        try:
            text = self._validate(text, image_ref)
            return self._run_turn(text, image_ref, conversation_id, generate_image)
        finally:
            self._cancel_event = None
            self._set_state(TurnState.IDLE)
            self._flight.release()

    def cancel(self) -> bool:
        """请求放弃当前流式响应；已累积的内容仍会提交。返回是否有进行中的流。"""

        cancel_event = self._cancel_event
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    # ---- 单轮流程 ----

    def _run_turn(
        self,
        text: str,
        image_ref: Optional[str],
        conversation_id: Optional[str],
        generate_image: bool,
    ) -> TurnResult:
        start_time = time.time()
        with log_context(trace_id=f"tr-{uuid4().hex}"):
            self._set_state(TurnState.SENDING)
            conv_id: Optional[str] = None
            parser = DeltaParser(getattr(self._settings, "max_consecutive_decode_errors", None))
            interrupted: Optional[StreamInterrupted] = None
            try:
                conv_id = self._reconciler.start_turn(
                    conversation_id or self._reconciler.active_id,
                    text,
                    image_ref,
                )
                bind_log_context(conversation_id=conv_id)
                user_message = self._reconciler.get(conv_id).messages[-1]
                accumulator = MessageAccumulator(
                    conv_id,
                    on_update=lambda msg: self._events.emit("streaming_delta", msg),
                )
                if generate_image:
                    self._request_image(text, accumulator)
                else:
                    interrupted = self._stream_chat(conv_id, accumulator, parser)
            except Exception as e:
                self._fail(conv_id, e)
                raise

            self._set_state(TurnState.COMMITTING)
            assistant_message = accumulator.finish()
            try:
                conversation = self._reconciler.complete_turn(
                    conv_id, assistant_message, image_generation=generate_image
                )
            except Exception as e:
                error = _as_business_error(e)
                self._log(logging.ERROR, "Commit failed", code=error.code, error=error.message)
                self._events.emit("turn_failed", error)
                raise

            self._log(
                logging.INFO,
                "Completed turn",
                elapsed_seconds=round(time.time() - start_time, 2),
                user_message_id=user_message.id,
                assistant_message_id=assistant_message.id,
                fragments=accumulator.fragment_count,
                decode_errors=parser.decode_errors,
                interrupted=interrupted is not None,
            )
            return TurnResult(
                conversation=conversation,
                user_message=user_message,
                assistant_message=assistant_message,
                interrupted=interrupted is not None,
                cancelled=isinstance(interrupted, StreamCancelled),
                decode_errors=parser.decode_errors,
            )

    def _stream_chat(
        self,
        conv_id: str,
        accumulator: MessageAccumulator,
        parser: DeltaParser,
    ) -> Optional[StreamInterrupted]:
        """流式对话路径；流中断时返回中断原因，已累积内容由调用方提交。"""

        model_cfg = self._provider_cfg.models[self._settings.default_model]
        history = self._reconciler.get(conv_id).messages
        payload = build_chat_payload(history, model_cfg)
        self._log(
            logging.INFO,
            "Calling provider (stream)",
            provider=self._provider_client.name,
            model=model_cfg.provider_model,
            message_count=len(history),
        )

        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        with self._provider_client.open_stream(payload) as chunks:
            self._set_state(TurnState.STREAMING)
            try:
                for data in iter_sse_payloads(chunks, cancel_event):
                    delta = parser.parse(data)
                    if delta is not None:
                        accumulator.apply(delta)
            except StreamInterrupted as e:
                self._log(
                    logging.WARNING,
                    "Stream ended early, committing partial content",
                    code=e.code,
                    error=e.message,
                    content_length=len(accumulator.session.accumulated_text),
                )
                return e
        return None

    def _request_image(self, prompt: str, accumulator: MessageAccumulator) -> None:
        model_cfg = self._provider_cfg.models[self._settings.image_model]
        payload = build_image_payload(prompt, model_cfg)
        self._log(
            logging.INFO,
            "Calling provider (image)",
            provider=self._provider_client.name,
            model=model_cfg.provider_model,
        )
        data = self._provider_client.generate_image(payload)
        accumulator.apply(parse_image_response(data))

    def _fail(self, conv_id: Optional[str], exc: Exception) -> None:
        """进入 FAILED 并通知订阅者；会话尚未建立（conv_id 为 None）时没有可中止的轮次。"""

        error = _as_business_error(exc)
        self._set_state(TurnState.FAILED)
        self._log(
            logging.ERROR,
            "Turn failed",
            code=error.code,
            error=error.message,
            http_status=error.http_status,
        )
        if conv_id is not None:
            self._reconciler.abort_turn(conv_id)
        self._events.emit("turn_failed", error)

    # ---- 辅助方法 ----

    def _validate(self, text: str, image_ref: Optional[str]) -> str:
        text = text or ""
        if not text.strip():
            if not image_ref:
                raise ValidationError(code="EMPTY_MESSAGE", message="Message must not be empty")
            text = IMAGE_ONLY_TEXT
        if image_ref and image_ref.startswith("data:"):
            # data URL 中 base64 部分约为原始字节数的 4/3
            encoded = image_ref.split(",", 1)[-1]
            approx_bytes = len(encoded) * 3 // 4
            if approx_bytes > self._settings.max_image_bytes:
                raise ValidationError(
                    code="IMAGE_TOO_LARGE",
                    message=f"Image exceeds {self._settings.max_image_bytes} bytes",
                )
        return text

    def _set_state(self, state: TurnState) -> None:
        if self._state == state:
            return
        self._state = state
        self._events.emit("state_changed", state)

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        logger.log(level, message, extra={"extra": fields})


def _as_business_error(exc: Exception) -> BusinessError:
    """turn_failed 订阅者总是收到带 code 的 BusinessError。"""

    if isinstance(exc, BusinessError):
        return exc
    return BusinessError(code="INTERNAL_ERROR", message=str(exc) or type(exc).__name__, http_status=500)
