"""流式响应处理。

- decoder: 原始字节流 -> SSE data 负载。
- delta: data 负载 -> 文本/图片增量。
- accumulator: 增量 -> 不断增长的助手消息。
"""
