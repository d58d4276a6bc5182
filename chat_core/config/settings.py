"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级（高 -> 低）：显式参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="grok",
        description="默认使用的 Provider 名称",
    )
    default_model: str = Field(
        default="chat",
        description="对话使用的逻辑模型名，由 registry 映射为具体厂商模型",
    )
    image_model: str = Field(
        default="image",
        description="图片生成使用的逻辑模型名",
    )

    # Grok / xAI
    grok_api_key: Optional[str] = Field(default=None, description="Grok API 密钥")
    grok_base_url: str = Field(
        default="https://api.x.ai/v1",
        description="Grok API 基础URL（也可以指向转发网关）",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 连接/写入超时时间（秒）")
    stream_idle_timeout: float = Field(
        default=60.0,
        ge=1.0,
        description="流式响应两次数据之间允许的最长空闲时间（秒），超时视为流中断",
    )

    # ---- 存储 ----
    storage_backend: Literal["json", "sqlite"] = Field(default="json", description="会话存储后端")
    storage_root: str = Field(default=".storage", description="存储根目录")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话行为 ----
    max_image_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        description="data URL 形式图片附件的最大字节数",
    )
    max_consecutive_decode_errors: Optional[int] = Field(
        default=None,
        ge=1,
        description="连续解析失败的事件数上限，超过后视为流中断；None 表示不限制",
    )
    title_max_chars: int = Field(default=50, ge=1, description="自动生成标题的最大字符数")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("grok_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
