"""面向 UI 的事件通知。

对话引擎通过 ChatEvents 向界面层推送变化，而不是让界面直接读写共享变量：

- message_list_changed(conversation_id): 某个会话的消息列表发生变化。
- streaming_delta(message): 流式进行中的助手消息快照（内容只增不减）。
- turn_failed(reason): 本轮失败，reason 为 BusinessError。
- state_changed(state): 单轮状态机切换（TurnState）。

订阅回调在事件产生的线程中同步执行；某个回调抛异常只记录日志，不影响本轮对话。
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Literal

from chat_core.infrastructure.logging.logger import logger


EventKind = Literal["message_list_changed", "streaming_delta", "turn_failed", "state_changed"]
EVENT_KINDS = ("message_list_changed", "streaming_delta", "turn_failed", "state_changed")

Listener = Callable[[Any], None]


class ChatEvents:
    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {kind: [] for kind in EVENT_KINDS}

    def subscribe(self, kind: EventKind, listener: Listener) -> Callable[[], None]:
        """注册监听器，返回取消订阅的函数。"""

        if kind not in self._listeners:
            raise ValueError(f"Unknown event kind: {kind!r}")
        with self._lock:
            self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[kind]:
                    self._listeners[kind].remove(listener)

        return unsubscribe

    def emit(self, kind: EventKind, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners[kind])
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.log(
                    logging.WARNING,
                    "Event listener failed",
                    extra={"extra": {"event": kind, "error": str(e)}},
                )
