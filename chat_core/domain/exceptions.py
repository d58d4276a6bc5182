"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

错误分类与处理策略：

- TransportError: 请求没有到达服务端，或在收到任何字节前连接被重置。中止本轮。
- StreamInterrupted: 已收到部分内容后连接中断。已累积的内容照常提交。
- DecodeError: 单个事件解析失败。逐事件吞掉并记录日志，永不上抛给用户。
- UpstreamError: 服务端返回非成功状态码。中止本轮。
- TurnInProgress: 调用方违反单飞约束（已有一轮在进行中）。
- PersistenceError: 最终提交写入存储失败。内存中的会话保持不变。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """网络层错误：连接失败、超时，且尚未收到任何响应字节。"""


class StreamInterrupted(BusinessError):
    """流式响应在收到部分内容后中断（连接断开、空闲超时或未收到 [DONE]）。"""


class StreamCancelled(StreamInterrupted):
    """调用方主动放弃本轮流式响应。"""


class DecodeError(BusinessError):
    """单个 SSE 事件无法解析。非致命，仅用于日志诊断。"""


class UpstreamError(BusinessError):
    """推理服务返回非 2xx 状态码时抛出。"""


class RateLimitError(UpstreamError):
    """Provider 限流错误（HTTP 429），由上层负责重试/退避策略。"""


class TurnInProgress(BusinessError):
    """已有一轮对话在进行中时再次发送。"""


class PersistenceError(BusinessError):
    """会话存储读写失败。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
