"""对话后端集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与流式句柄 (base)。
- 维护后端描述与 Provider 注册表 (registry)。
- 提供各后端的具体实现 (ollama_client、openai_compatible_client、cloud_client、local_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ChatProvider, StreamHandle
from chat_core.providers.cloud_client import CloudClient
from chat_core.providers.local_client import LocalRuntimeClient, TokenEngine
from chat_core.providers.ollama_client import OllamaClient
from chat_core.providers.openai_compatible_client import OpenAICompatibleClient
from chat_core.providers.registry import ProviderRegistry


def create_default_registry(cfg=None, local_engine: Optional[TokenEngine] = None) -> ProviderRegistry:
    """按配置注册全部内置后端，active 取配置中的 active_backend。"""

    cfg = cfg or settings
    registry = ProviderRegistry(
        active=getattr(cfg, "active_backend", "ollama"),
        api_keys={
            "openai_compatible": getattr(cfg, "openai_compatible_api_key", None),
            "cloud": getattr(cfg, "cloud_api_key", None),
        },
    )
    registry.register("ollama", lambda: OllamaClient(cfg))
    registry.register("openai_compatible", lambda: OpenAICompatibleClient(cfg))
    registry.register("cloud", lambda: CloudClient(cfg))
    registry.register("local", lambda: LocalRuntimeClient(local_engine, cfg))
    return registry


__all__ = [
    "ChatProvider",
    "StreamHandle",
    "ProviderRegistry",
    "create_default_registry",
]
