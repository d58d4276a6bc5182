"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 构造出站请求体 (serializer)。
- 提供各厂商的具体实现 (如 grok_client)。
"""

from typing import Literal, Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ProviderClient
from chat_core.providers.grok_client import GrokClient


def create_provider(name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "grok")).lower()
    if provider_name == "grok":
        return GrokClient(settings)
    raise KeyError(f"Unknown provider: {provider_name!r}")


DefaultProviderName = Literal["grok"]
