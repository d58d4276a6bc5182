"""Grok (xAI) Provider 适配器。

接口风格与 OpenAI 一致，使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本模块只负责 HTTP 往返与状态码到业务异常的映射；
SSE 行拆分、增量解析与消息拼接分别由 streaming 包下的模块完成。
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import RateLimitError, TransportError, UpstreamError, ValidationError
from chat_core.providers.registry import GROK_CONFIG


class GrokClient:
    """Grok 提供方客户端实现。"""

    name = "grok"

    def __init__(self, cfg=settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg

    @contextmanager
    def open_stream(self, payload: Dict[str, Any]) -> Iterator[Iterator[bytes]]:
        """发起流式请求，在上下文内产出原始字节迭代器。

        离开上下文即关闭底层连接，调用方中途放弃时同样会释放连接。
        """

        self._require_api_key()
        try:
            with httpx.Client(timeout=self._timeout(), trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._url(),
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    self._raise_for_status(resp, streamed=True)
                    yield resp.iter_bytes()
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(code="NETWORK_ERROR", message=str(e))

    def generate_image(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """执行一次非流式图片生成调用，返回原始响应 JSON。"""

        self._require_api_key()
        try:
            with httpx.Client(timeout=self._timeout(), trust_env=False) as client:
                resp = client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(code="BAD_RESPONSE", message=f"Invalid JSON from image endpoint: {e}", http_status=502)
        if not isinstance(data, dict):
            raise UpstreamError(code="BAD_RESPONSE", message="Image response is not an object", http_status=502)
        return data

    # ---- 辅助方法 ----

    def _require_api_key(self) -> None:
        if not getattr(self._settings, "grok_api_key", None):
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="GROK_API_KEY not set")

    def _url(self) -> str:
        base = getattr(self._settings, "grok_base_url", None) or GROK_CONFIG.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.grok_api_key}",
            "Content-Type": "application/json",
        }

    def _timeout(self) -> httpx.Timeout:
        # read 超时即流式空闲阈值：两次数据之间超过该时间视为中断
        idle = getattr(self._settings, "stream_idle_timeout", None) or self._settings.http_timeout
        return httpx.Timeout(self._settings.http_timeout, read=idle)

    @staticmethod
    def _raise_for_status(resp, streamed: bool = False) -> None:
        if resp.status_code < 400:
            return
        if resp.status_code == 429:
            # 限流错误交给上层做重试/退避
            raise RateLimitError(code="RATE_LIMIT", message="Grok rate limit", http_status=429)
        if streamed:
            resp.read()
        raise UpstreamError(
            code="API_ERROR",
            message=f"Grok API error: {resp.status_code} {resp.text}".strip(),
            http_status=resp.status_code,
        )
