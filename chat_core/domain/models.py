"""健康对话的领域数据模型。

本模块定义了管线各组件之间共享的标准数据结构：

- HealthCategory: 健康数据类别（个人信息、化验结果、影像报告、就诊记录）。
- RecordSummary / LabValue: HealthRecordSource 返回的记录摘要。
- ChatContext: 每次发送时临时构建、不落盘的健康上下文。
- ProviderResponse: 各后端统一的回复结果。
- RetryPolicy / RetryOutcome: 重试执行器的策略与结果。

所有 Provider 适配器与管理器都只依赖这些模型，
不直接依赖具体后端的 JSON 结构。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional


class HealthCategory(str, Enum):
    """可纳入对话上下文的健康数据类别。"""

    PERSONAL_INFO = "personal_info"
    BLOOD_TEST = "blood_test"
    IMAGING_REPORT = "imaging_report"
    HEALTH_CHECKUP = "health_checkup"

    @property
    def display_name(self) -> str:
        return _CATEGORY_NAMES[self]

    @classmethod
    def parse(cls, value: "str | HealthCategory") -> "HealthCategory":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


_CATEGORY_NAMES = {
    HealthCategory.PERSONAL_INFO: "Personal Information",
    HealthCategory.BLOOD_TEST: "Lab Results",
    HealthCategory.IMAGING_REPORT: "Imaging Reports",
    HealthCategory.HEALTH_CHECKUP: "Medical Visits",
}

DEFAULT_CATEGORIES: FrozenSet[HealthCategory] = frozenset(
    {HealthCategory.PERSONAL_INFO, HealthCategory.BLOOD_TEST}
)


@dataclass
class LabValue:
    """单项化验指标。"""

    name: str
    value: str
    unit: str = ""
    reference_range: str = ""
    is_abnormal: bool = False


@dataclass
class RecordSection:
    """文档中提取出的一个段落（如 "Impression"、"Findings"）。"""

    title: str
    content: str


@dataclass
class RecordSummary:
    """一条健康记录的摘要。

    - category 为 None 且 is_legacy=True 时表示旧格式的非结构化文档。
    - details 用于个人信息类记录（如 "Blood Type" -> "O+"）。
    - values 用于化验类记录。
    - sections 用于影像报告、就诊记录等文档类记录。
    - priority 用于文档排序，数值越大越靠前。
    """

    id: str
    title: str
    category: Optional[HealthCategory] = None
    record_date: Optional[datetime] = None
    provider_name: str = ""
    summary: str = ""
    details: Dict[str, str] = field(default_factory=dict)
    sections: List[RecordSection] = field(default_factory=list)
    values: List[LabValue] = field(default_factory=list)
    priority: int = 0
    is_legacy: bool = False


def estimate_tokens(text: str) -> int:
    """按约 4 个字符 1 个 token 估算，空文本为 0。"""
    if not text:
        return 0
    return max(1, len(text) // 4)


@dataclass
class ChatContext:
    """单次发送构建的健康上下文，不持久化。"""

    categories: FrozenSet[HealthCategory]
    max_tokens: int
    personal_info: Optional[RecordSummary] = None
    records: List[RecordSummary] = field(default_factory=list)
    documents: List[RecordSummary] = field(default_factory=list)
    legacy_documents: List[RecordSummary] = field(default_factory=list)
    system_prompt: Optional[str] = None
    text: str = ""
    was_compressed: bool = False

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


@dataclass
class ProviderResponse:
    """后端统一的回复结果。

    - content: 最终回复文本。
    - token_count: 后端报告的 token 数（可能缺失）。
    - response_time: 从发出请求到拿到完整回复的耗时（秒）。
    """

    content: str
    token_count: Optional[int] = None
    response_time: float = 0.0
    model: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    """指数退避重试策略。max_attempts 包含首次尝试。"""

    max_attempts: int = 3
    initial_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        return cls(max_attempts=5, initial_delay=1.0, max_delay=30.0)

    @classmethod
    def conservative(cls) -> "RetryPolicy":
        return cls(max_attempts=2, initial_delay=5.0, max_delay=60.0)


@dataclass
class RetryOutcome:
    """重试执行结果。

    kind:
        - "success": value 为操作返回值。
        - "failure": error 为最后一次错误，attempts_made 为实际尝试次数。
        - "cancelled": 等待期间被取消。
    """

    kind: Literal["success", "failure", "cancelled"]
    value: Any = None
    error: Optional[BaseException] = None
    attempts_made: int = 0

    @classmethod
    def success(cls, value: Any, attempts_made: int = 1) -> "RetryOutcome":
        return cls(kind="success", value=value, attempts_made=attempts_made)

    @classmethod
    def failure(cls, error: BaseException, attempts_made: int) -> "RetryOutcome":
        return cls(kind="failure", error=error, attempts_made=attempts_made)

    @classmethod
    def cancelled(cls, attempts_made: int = 0) -> "RetryOutcome":
        return cls(kind="cancelled", attempts_made=attempts_made)

    @property
    def succeeded(self) -> bool:
        return self.kind == "success"
