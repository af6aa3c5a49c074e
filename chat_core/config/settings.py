"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKENDS = ("ollama", "openai_compatible", "cloud", "local")
CATEGORIES = ("personal_info", "blood_test", "imaging_report", "health_checkup")


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


class PipelineSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端选择 ----
    active_backend: str = Field(
        default="ollama",
        description="当前使用的对话后端：ollama、openai_compatible、cloud、local",
    )

    # Ollama（自托管推理服务）
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama 服务地址")
    ollama_model: str = Field(default="llama3.2:3b", description="Ollama 模型 ID")

    # OpenAI 兼容推理服务（LM Studio、vLLM 等）
    openai_compatible_base_url: str = Field(
        default="http://localhost:1234",
        description="OpenAI 兼容服务地址（不含 /v1）",
    )
    openai_compatible_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容服务密钥")
    openai_compatible_model: str = Field(default="medgemma-4b-it", description="OpenAI 兼容服务模型 ID")
    openai_compatible_max_tokens: int = Field(default=2048, ge=1, description="单次回复最大 token 数")

    # 托管云服务
    cloud_base_url: str = Field(default="https://api.anthropic.com", description="云服务 API 基础URL")
    cloud_api_key: Optional[str] = Field(default=None, description="云服务 API 密钥")
    cloud_model: str = Field(default="claude-3-haiku-20240307", description="云服务模型 ID")
    cloud_max_tokens: int = Field(default=2048, ge=1, description="单次回复最大 token 数")

    # 本地推理运行时
    local_model: str = Field(default="phi-3-mini-4k-instruct", description="本地运行时模型 ID")
    local_max_tokens: int = Field(default=512, ge=1, description="本地推理最大生成 token 数")

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    log_level: str = Field(default="INFO", description="日志级别")

    # ---- 健康上下文 ----
    context_token_budget: int = Field(
        default=4000,
        ge=1000,
        le=8000,
        description="健康上下文的 token 预算",
    )
    selected_categories: List[str] = Field(
        default_factory=lambda: ["personal_info", "blood_test"],
        description="默认纳入上下文的健康数据类别",
    )
    persona: str = Field(default="family_medicine", description="内置医生人设提示词名称")
    system_prompt: Optional[str] = Field(default=None, description="自定义系统提示词（覆盖人设）")

    # ---- 流式输出 ----
    use_streaming: bool = Field(default=True, description="是否优先使用流式回复")
    stream_update_interval: float = Field(
        default=1.0 / 15.0,
        gt=0.0,
        le=1.0,
        description="流式 UI 更新的最小间隔（秒）",
    )

    # ---- 重试策略 ----
    retry_max_attempts: int = Field(default=3, ge=1, le=10, description="最大尝试次数（含首次）")
    retry_initial_delay: float = Field(default=2.0, ge=0.0, description="首次重试前的等待（秒）")
    retry_max_delay: float = Field(default=60.0, ge=0.0, description="单次等待上限（秒）")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="退避倍数")
    retry_jitter: bool = Field(default=True, description="是否对等待时间加入 ±25% 抖动")

    # ---- 首轮指令注入 ----
    injection_model_patterns: List[str] = Field(
        default_factory=lambda: ["medgemma"],
        description="不支持 system 角色、需要把指令并入首条用户消息的模型前缀",
    )

    # ---- 错误上报 ----
    error_dedup_window: float = Field(default=5.0, ge=0.0, description="相同错误去重窗口（秒）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("active_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        key = v.strip().lower()
        if key not in BACKENDS:
            raise ValueError(f"Unknown backend {v!r}, expected one of {', '.join(BACKENDS)}")
        return key

    @field_validator("selected_categories")
    @classmethod
    def validate_categories(cls, v: List[str]) -> List[str]:
        unknown = [c for c in v if c not in CATEGORIES]
        if unknown:
            raise ValueError(f"Unknown health categories: {unknown}")
        return v

    @field_validator("openai_compatible_api_key", "cloud_api_key")
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


settings = PipelineSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = PipelineSettings
