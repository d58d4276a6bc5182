"""Provider 抽象接口。

上层 ChatOrchestrator 不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 GrokClient）。
- 负责：发送已构造好的请求体，并把 HTTP 错误映射为业务异常。

这样可以在不改编排代码的前提下接入其他 OpenAI 兼容的服务或转发网关。
"""

from typing import Any, ContextManager, Dict, Iterator, Protocol


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志。
    - open_stream(payload): 发起流式请求，上下文内产出原始字节块。
    - generate_image(payload): 非流式图片生成，返回响应 JSON。
    """

    name: str

    def open_stream(self, payload: Dict[str, Any]) -> ContextManager[Iterator[bytes]]:
        ...

    def generate_image(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...
