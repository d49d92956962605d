"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "somm-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "gpt-4o"。

主模型与备用模型都是逻辑名，具体用哪个底层模型由这里集中配置。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "somm-chat": ModelConfig(
            logical_name="somm-chat",
            provider_model="gpt-4o",
            max_tokens=2000,
            default_temperature=0.7,
        ),
        "somm-chat-fallback": ModelConfig(
            logical_name="somm-chat-fallback",
            provider_model="gpt-4o-mini",
            max_tokens=2000,
            default_temperature=0.7,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(provider: ProviderConfig, logical_name: str) -> ModelConfig:
    """逻辑名映射为模型配置；未登记的名字按厂商模型 ID 原样透传。"""

    cfg = provider.models.get(logical_name)
    if cfg is not None:
        return cfg
    return ModelConfig(
        logical_name=logical_name,
        provider_model=logical_name,
        max_tokens=2000,
        default_temperature=0.7,
    )
