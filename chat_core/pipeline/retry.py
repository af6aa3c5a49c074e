"""通用的指数退避重试执行器。

与对话语义无关：只负责执行一个异步操作，失败时按 RetryPolicy
计算等待时间、回调 on_retry、挂起后再试。

等待时间 = min(max_delay, initial_delay * multiplier ** (attempt - 1))，
开启 jitter 时再乘以 [0.75, 1.25] 区间内的随机因子，结果不小于 0。

每次 run() 调用互不共享可变状态，可被任意并发使用。
"""

import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from chat_core.domain.exceptions import ApiError, BusinessError, NetworkError, RateLimitError
from chat_core.domain.models import RetryOutcome, RetryPolicy
from chat_core.infrastructure.logging.logger import log_event

Operation = Callable[[], Awaitable[Any]]
RetryCallback = Callable[[int, BaseException, float], Any]
JITTER_RATIO = 0.25


def is_retryable_error(error: BaseException) -> bool:
    """默认错误分类：连接/超时/5xx/限流可重试，鉴权/校验/解析错误不可重试。"""

    if isinstance(error, (NetworkError, RateLimitError)):
        return True
    if isinstance(error, ApiError):
        return error.http_status >= 500 or error.http_status in (408, 429)
    if isinstance(error, BusinessError):
        return False
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    return False


class RetryExecutor:
    """带抖动的指数退避执行器。

    sleep 与 rng 可注入，便于测试时得到确定的等待序列。
    """

    def __init__(
        self,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int, policy: RetryPolicy) -> float:
        """第 attempt 次失败后、下一次尝试前的等待秒数（attempt 从 1 开始）。"""
        delay = min(policy.max_delay, policy.initial_delay * policy.multiplier ** (attempt - 1))
        if policy.jitter:
            spread = delay * JITTER_RATIO
            delay += self._rng.uniform(-spread, spread)
        return max(0.0, delay)

    async def run(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[RetryCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> RetryOutcome:
        """执行 operation，返回 success / failure / cancelled 三种结果之一。

        - 不可重试的错误或最后一次尝试失败 -> failure(error, attempts_made)。
        - 等待期间任务被取消或 cancel_event 被置位 -> cancelled。
        - operation 自身抛出的 CancelledError 原样向上传播。
        """

        policy = policy or RetryPolicy.default()
        classify = is_retryable or is_retryable_error
        ctx = dict(log_ctx or {})
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return RetryOutcome.cancelled(attempt)
            attempt += 1
            try:
                value = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = classify(exc)
                if not retryable or attempt >= policy.max_attempts:
                    log_event(
                        logging.WARNING,
                        "Operation failed",
                        ctx,
                        attempts_made=attempt,
                        retryable=retryable,
                        error=str(exc),
                    )
                    return RetryOutcome.failure(exc, attempt)

                delay = self.compute_delay(attempt, policy)
                log_event(
                    logging.INFO,
                    "Retry scheduled",
                    ctx,
                    attempt=attempt,
                    next_attempt=attempt + 1,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                if on_retry is not None:
                    res = on_retry(attempt, exc, delay)
                    if inspect.isawaitable(res):
                        await res
                try:
                    interrupted = await self._wait(delay, cancel_event)
                except asyncio.CancelledError:
                    log_event(logging.INFO, "Retry cancelled during backoff", ctx, attempt=attempt)
                    return RetryOutcome.cancelled(attempt)
                if interrupted:
                    log_event(logging.INFO, "Retry cancelled during backoff", ctx, attempt=attempt)
                    return RetryOutcome.cancelled(attempt)
                continue

            if attempt > 1:
                log_event(logging.INFO, "Operation succeeded after retry", ctx, attempts_made=attempt)
            return RetryOutcome.success(value, attempt)

    async def run_or_raise(self, operation: Operation, policy: Optional[RetryPolicy] = None, **kwargs) -> Any:
        """run() 的便捷版本：成功返回值，失败抛出最后一次错误，取消抛 CancelledError。"""

        outcome = await self.run(operation, policy, **kwargs)
        if outcome.kind == "success":
            return outcome.value
        if outcome.kind == "cancelled":
            raise asyncio.CancelledError()
        raise outcome.error  # type: ignore[misc]

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """挂起 delay 秒；返回 True 表示被 cancel_event 打断。"""

        if cancel_event is None:
            await self._sleep(delay)
            return False
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return cancel_event.is_set()
