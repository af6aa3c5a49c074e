"""全局错误上报。

管理器把发送失败交给 ErrorReporter：
- 同一 context、同一错误信息在去重窗口内重复出现时直接忽略，避免重试风暴刷屏；
- 按严重程度决定“当前错误”和等待队列；
- 可重试的错误附带 retry_action，由用户或系统稍后触发。
"""

import inspect
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple
from uuid import uuid4

from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    EmptyMessageError,
    NetworkError,
    NotConnectedError,
    RateLimitError,
    StoreError,
    ValidationError,
)
from chat_core.infrastructure.logging.logger import log_event

RetryAction = Callable[[], Any]


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return ["info", "warning", "error", "critical"].index(self.value)


def detect_severity(error: BaseException) -> ErrorSeverity:
    if isinstance(error, EmptyMessageError):
        return ErrorSeverity.INFO
    if isinstance(error, (NotConnectedError, NetworkError, RateLimitError)):
        return ErrorSeverity.WARNING
    if isinstance(error, StoreError):
        return ErrorSeverity.CRITICAL
    if isinstance(error, (ValidationError, ApiError)):
        return ErrorSeverity.ERROR
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorSeverity.WARNING
    return ErrorSeverity.ERROR


def error_message(error: BaseException) -> str:
    if isinstance(error, BusinessError):
        return error.message
    return str(error) or type(error).__name__


@dataclass
class HandledError:
    error: BaseException
    message: str
    context: str
    severity: ErrorSeverity
    timestamp: float
    retry_action: Optional[RetryAction] = None
    id: str = field(default_factory=lambda: f"e-{uuid4().hex}")

    @property
    def can_retry(self) -> bool:
        return self.retry_action is not None


class ErrorReporter:
    def __init__(
        self,
        dedup_window: float = 5.0,
        history_limit: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._dedup_window = dedup_window
        self._history_limit = history_limit
        self._clock = clock
        self.current: Optional[HandledError] = None
        self.queue: List[HandledError] = []
        self.history: List[HandledError] = []

    def handle(
        self,
        error: BaseException,
        context: str,
        severity: Optional[ErrorSeverity] = None,
        retry_action: Optional[RetryAction] = None,
    ) -> Optional[HandledError]:
        """登记一条错误；被去重时返回 None。"""

        now = self._clock()
        message = error_message(error)
        if self._is_duplicate(context, message, now):
            log_event(logging.DEBUG, "Duplicate error suppressed", {"context": context}, error=message)
            return None

        handled = HandledError(
            error=error,
            message=message,
            context=context,
            severity=severity or detect_severity(error),
            timestamp=now,
            retry_action=retry_action,
        )
        self.history.append(handled)
        if len(self.history) > self._history_limit:
            del self.history[: len(self.history) - self._history_limit]

        if self.current is None:
            self.current = handled
        elif handled.severity.rank > self.current.severity.rank:
            self._enqueue(self.current)
            self.current = handled
        else:
            self._enqueue(handled)

        level = logging.ERROR if handled.severity.rank >= ErrorSeverity.ERROR.rank else logging.WARNING
        log_event(
            level,
            "Error reported",
            {"context": context},
            severity=handled.severity.value,
            error=message,
            code=getattr(error, "code", None),
            retryable=handled.can_retry,
        )
        return handled

    def dismiss_current(self) -> None:
        self.current = self.queue.pop(0) if self.queue else None

    async def retry_current(self) -> bool:
        """执行当前错误的重试动作并将其移出；没有可重试动作时返回 False。"""

        handled = self.current
        if handled is None or handled.retry_action is None:
            return False
        self.dismiss_current()
        result = handled.retry_action()
        if inspect.isawaitable(result):
            await result
        return True

    def clear_all(self) -> None:
        self.current = None
        self.queue.clear()

    def error_count(self, context: Optional[str] = None, window: Optional[float] = 3600.0) -> int:
        """最近 window 秒内的错误数（默认一小时），window=None 时统计全部历史。"""

        now = self._clock()
        return sum(
            1
            for h in self.history
            if (context is None or h.context == context) and (window is None or now - h.timestamp <= window)
        )

    def most_common_errors(self, limit: int = 5) -> List[Tuple[str, int]]:
        """按 context 分组，返回出错最多的 (context, 次数)。"""

        return Counter(h.context for h in self.history).most_common(limit)

    def _enqueue(self, handled: HandledError) -> None:
        self.queue.append(handled)
        self.queue.sort(key=lambda h: h.severity.rank, reverse=True)

    def _is_duplicate(self, context: str, message: str, now: float) -> bool:
        for h in reversed(self.history):
            if now - h.timestamp > self._dedup_window:
                break
            if h.context == context and h.message == message:
                return True
        return False
