"""后端配置与 Provider 注册表。

本模块将“后端标识”与“具体实现”解耦：

- backend_id：配置里使用的统一名称，例如 "ollama"、"cloud"。
- factory：创建对应 ChatProvider 的无参函数。

管理器只通过 registry.get(backend_id) 拿到 Provider，
新增后端只需 register 一个新实现，无需修改任何分支语句。"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from chat_core.domain.exceptions import ValidationError
from chat_core.providers.base import ChatProvider


@dataclass
class BackendConfig:
    """单个 HTTP 后端的静态描述。"""

    name: str
    default_base_url: str
    requires_api_key: bool = False


OLLAMA_CONFIG = BackendConfig(
    name="ollama",
    default_base_url="http://localhost:11434",
)

OPENAI_COMPATIBLE_CONFIG = BackendConfig(
    name="openai_compatible",
    default_base_url="http://localhost:1234",
)

CLOUD_CONFIG = BackendConfig(
    name="cloud",
    default_base_url="https://api.anthropic.com",
    requires_api_key=True,
)

BACKEND_CONFIGS: Mapping[str, BackendConfig] = {
    "ollama": OLLAMA_CONFIG,
    "openai_compatible": OPENAI_COMPATIBLE_CONFIG,
    "cloud": CLOUD_CONFIG,
}


ProviderFactory = Callable[[], ChatProvider]


class ProviderRegistry:
    """按后端标识管理 Provider 工厂与实例缓存。

    api_keys 记录各后端已配置的密钥；切换到 requires_api_key 的后端时必须有密钥。
    """

    def __init__(self, active: Optional[str] = None, api_keys: Optional[Mapping[str, Optional[str]]] = None):
        self._api_keys = {k.lower(): v for k, v in (api_keys or {}).items()}
        self._factories: Dict[str, ProviderFactory] = {}
        self._instances: Dict[str, ChatProvider] = {}
        self._active = active.lower() if active else None

    def register(self, backend_id: str, factory: ProviderFactory, replace: bool = False) -> None:
        key = backend_id.lower()
        if key in self._factories and not replace:
            raise ValidationError(code="BACKEND_EXISTS", message=f"Backend {backend_id!r} already registered")
        self._factories[key] = factory
        self._instances.pop(key, None)
        if self._active is None:
            self._active = key

    def backends(self) -> List[str]:
        return list(self._factories)

    @property
    def active(self) -> Optional[str]:
        return self._active

    def set_active(self, backend_id: str) -> None:
        key = backend_id.lower()
        if key not in self._factories:
            raise ValidationError(code="UNKNOWN_BACKEND", message=f"Unknown backend: {backend_id!r}")
        backend = BACKEND_CONFIGS.get(key)
        if backend is not None and backend.requires_api_key and not self._api_keys.get(key):
            raise ValidationError(code="MISSING_API_KEY", message=f"Backend {backend_id!r} requires an API key")
        self._active = key

    def get(self, backend_id: Optional[str] = None) -> ChatProvider:
        key = (backend_id or self._active or "").lower()
        if key not in self._factories:
            raise ValidationError(code="UNKNOWN_BACKEND", message=f"Unknown backend: {key or '<none>'!r}")
        if key not in self._instances:
            self._instances[key] = self._factories[key]()
        return self._instances[key]

    def invalidate(self, backend_id: Optional[str] = None) -> None:
        """丢弃缓存实例（配置变更后调用）。"""
        if backend_id is None:
            self._instances.clear()
        else:
            self._instances.pop(backend_id.lower(), None)
