"""增量解析。

从单个 data 负载中提取本次增量：

- 流式对话：choices[0].delta.content -> TextDelta。
- 图片生成（非流式）：data[0].url -> ImageDelta。

单个负载 JSON 解析失败时记录诊断并跳过，不中止本轮。
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from chat_core.domain.exceptions import DecodeError, StreamInterrupted, UpstreamError
from chat_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ImageDelta:
    image_ref: str


Delta = Union[TextDelta, ImageDelta]


def decode_payload(payload: str) -> Dict[str, Any]:
    """把负载解析为 JSON 对象，失败时抛出 DecodeError。"""

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(code="DECODE_ERROR", message=str(e), payload=payload[:200])
    if not isinstance(data, dict):
        raise DecodeError(code="DECODE_ERROR", message="Event payload is not an object", payload=payload[:200])
    return data


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0] if isinstance(choices[0], dict) else {}
    delta = first.get("delta") or {}
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def parse_delta(payload: str) -> Optional[Delta]:
    """解析单个流式事件负载。

    返回 None 表示本事件没有可用增量（空增量、角色声明、usage 统计或解析失败）。
    """

    return DeltaParser().parse(payload)


class DeltaParser:
    """带连续失败计数的增量解析器，每轮对话一个实例。

    max_consecutive_errors 为 None 时不限制；否则连续解析失败的事件数
    超过该值即视为流中断（已累积内容照常提交）。
    """

    def __init__(self, max_consecutive_errors: Optional[int] = None):
        self._max_consecutive = max_consecutive_errors
        self._consecutive = 0
        self.decode_errors = 0

    def parse(self, payload: str) -> Optional[Delta]:
        try:
            data = decode_payload(payload)
        except DecodeError as e:
            self.decode_errors += 1
            self._consecutive += 1
            logger.log(
                logging.WARNING,
                "Skipped malformed stream event",
                extra={"extra": {"code": e.code, "error": e.message, **e.extra}},
            )
            if self._max_consecutive is not None and self._consecutive > self._max_consecutive:
                raise StreamInterrupted(
                    code="TOO_MANY_DECODE_ERRORS",
                    message=f"{self._consecutive} consecutive malformed events",
                )
            return None
        self._consecutive = 0
        text = extract_text(data)
        if text is None:
            return None
        return TextDelta(text=text)


def parse_image_response(data: Dict[str, Any]) -> ImageDelta:
    """从图片生成响应中提取图片引用。"""

    items = data.get("data")
    first = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
    url = first.get("url")
    if isinstance(url, str) and url:
        return ImageDelta(image_ref=url)
    b64 = first.get("b64_json")
    if isinstance(b64, str) and b64:
        return ImageDelta(image_ref=f"data:image/png;base64,{b64}")
    raise UpstreamError(code="IMAGE_MISSING", message="Image response carries no image reference", http_status=502)
