"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：显式参数 > 环境变量 > .env > config.yaml > secrets。

config.yaml 既可以写扁平的字段名，也可以按分组书写::

    openai:
      api_key: sk-...
    speech:
      voice: Daniel
      rate: 160
    context:
      max_messages: 20
      keep_recent: 6

分组会被展开成 openai_api_key / speech_voice / context_max_messages 等键，
其中 context_* 再映射到对应字段。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# 分组展开后与字段名不一致的键
_YAML_ALIASES = {
    "context_max_messages": "max_context_messages",
    "storage_root_dir": "storage_root",
}


def _config_candidates() -> Iterable[Path]:
    explicit = os.getenv("SOMM_CONFIG_FILE")
    if explicit:
        yield Path(explicit).expanduser()
    yield Path.cwd() / "config.yaml"
    yield Path(__file__).resolve().parents[2] / "config.yaml"


def _flatten_sections(data: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[key] = value
    return {_YAML_ALIASES.get(k, k): v for k, v in flat.items()}


def _load_config_from_yaml() -> Dict[str, Any]:
    """读取第一个存在的 config.yaml，并展开分组写法。"""
    seen: set[Path] = set()
    for path in _config_candidates():
        if path in seen or not path.exists():
            continue
        seen.add(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
            continue
        if not isinstance(data, dict):
            warnings.warn(f"Config file {path} is not a mapping, ignored")
            continue
        return _flatten_sections(data)
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(default="openai", description="默认使用的 Provider 名称")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口的基础URL",
    )
    primary_model: str = Field(default="somm-chat", description="主模型（逻辑名）")
    fallback_model: str = Field(
        default="somm-chat-fallback",
        description="主模型不可用时替换的备用模型（逻辑名）",
    )

    # ---- 采样参数：偏向简洁回答 ----
    max_tokens: int = Field(default=500, ge=1, description="单次回答的 token 上限")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    presence_penalty: float = Field(default=0.1, ge=-2.0, le=2.0)
    frequency_penalty: float = Field(default=0.1, ge=-2.0, le=2.0)
    http_timeout: float = Field(default=20.0, ge=1.0, description="等待 Provider 的超时时间（秒）")
    enable_streaming: bool = Field(default=True, description="运行环境是否支持增量输出")

    # ---- 上下文窗口 ----
    max_context_messages: int = Field(default=20, ge=1, le=200, description="历史消息上限，超过后压缩")
    context_keep_recent: int = Field(default=6, ge=0, description="压缩时保留的最近消息数")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 语音 ----
    speech_voice: Optional[str] = Field(default=None, description="优先使用的语音名称")
    speech_rate: int = Field(default=175, ge=50, le=400, description="语速（每分钟词数）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
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
