"""SSE 字节流解码。

把网络层产出的原始字节块切分为 `data:` 事件负载：

- 字节块不保证在行边界或 UTF-8 字符边界结束，未完成的尾部留在缓冲区等待下一块。
- 非 `data:` 开头的行（注释、event/id 字段、保活空行）直接丢弃。
- 负载为 `[DONE]` 时序列结束，之后的内容不再产出。
"""

import codecs
import logging
import threading
from typing import Iterable, Iterator, List, Optional

import httpx

from chat_core.domain.exceptions import StreamCancelled, StreamInterrupted, TransportError
from chat_core.infrastructure.logging.logger import logger


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SseLineDecoder:
    """增量式 SSE 行解码器。"""

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.bytes_received = 0

    def feed(self, chunk: bytes) -> List[str]:
        """喂入一个字节块，返回本块补全的 data 负载列表。"""

        if self.done or not chunk:
            return []
        self.bytes_received += len(chunk)
        self._buffer += self._text.decode(chunk)
        payloads: List[str] = []
        while not self.done:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            payload = self._accept_line(line)
            if payload is not None:
                payloads.append(payload)
        if self.done:
            self._buffer = ""
        return payloads

    def flush(self) -> List[str]:
        """流结束时处理缓冲区中没有换行结尾的最后一行。"""

        if self.done:
            return []
        self._buffer += self._text.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        payload = self._accept_line(line)
        return [payload] if payload is not None else []

    def _accept_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None
        return data


def iter_sse_payloads(
    chunks: Iterable[bytes],
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[str]:
    """惰性地把字节块序列转换为 data 负载序列。

    - 收到 `[DONE]` 时正常结束。
    - 字节源在 `[DONE]` 之前结束，或在收到任何字节后出现传输错误，抛出 StreamInterrupted。
    - 尚未收到任何字节就出现传输错误，抛出 TransportError。
    - cancel_event 被置位时在下一块之前停止，抛出 StreamCancelled。
    """

    def check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise StreamCancelled(code="STREAM_CANCELLED", message="Stream cancelled by caller")

    decoder = SseLineDecoder()
    source = iter(chunks)
    while True:
        check_cancelled()
        try:
            chunk = next(source)
        except StopIteration:
            break
        except httpx.TransportError as e:
            if decoder.bytes_received == 0:
                raise TransportError(code="NETWORK_ERROR", message=str(e))
            logger.log(
                logging.WARNING,
                "Stream interrupted",
                extra={"extra": {"bytes_received": decoder.bytes_received, "error": str(e)}},
            )
            raise StreamInterrupted(code="STREAM_INTERRUPTED", message=str(e))
        # 读取期间可能已被取消，此时丢弃刚到达的数据
        check_cancelled()
        for payload in decoder.feed(chunk):
            yield payload
        if decoder.done:
            return

    for payload in decoder.flush():
        yield payload
    if decoder.done:
        return
    if decoder.bytes_received == 0:
        raise TransportError(code="EMPTY_STREAM", message="Connection closed before any data")
    raise StreamInterrupted(
        code="STREAM_INTERRUPTED",
        message="Stream closed before [DONE]",
        bytes_received=decoder.bytes_received,
    )
