"""Chat Core 顶层包。

该包提供与远程大模型服务进行多轮对话的核心实现，
包括配置加载、领域模型、Provider 适配、SSE 流式解码、
增量拼接、会话协调与持久化存储等能力。
"""

from chat_core.api.service import run_chat, get_default_orchestrator

__all__ = ["run_chat", "get_default_orchestrator"]
