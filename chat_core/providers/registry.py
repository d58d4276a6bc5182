"""Provider 与模型配置。

本模块将"逻辑模型名"与"具体厂商模型名"解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"、"image"。
- provider_model：厂商实际提供的模型 ID，例如 "grok-beta"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


# Grok / xAI 配置
GROK_CONFIG = ProviderConfig(
    name="grok",
    base_url="https://api.x.ai/v1",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="grok-beta",
            default_temperature=0.7,
        ),
        "image": ModelConfig(
            logical_name="image",
            provider_model="grok-2-image",
            default_temperature=0.7,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "grok": GROK_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
