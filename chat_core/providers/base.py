"""Provider 抽象接口。

管理器不直接依赖具体后端的 HTTP 协议，而是依赖 ChatProvider 协议：

- 每个后端实现一个 ChatProvider（如 OllamaClient、CloudClient）。
- 负责：把 (content, context, system_prompt) 转成具体 API 请求，
  并把响应解析为统一的 ProviderResponse。
- 流式调用返回 StreamHandle，取消句柄即停止继续投递增量。

这样可以在不改管理器代码的前提下接入更多后端，只需在 registry 中注册。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol

import httpx

from chat_core.domain.exceptions import ApiError, DecodingError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import ProviderResponse
from chat_core.infrastructure.logging.logger import logger

UpdateCallback = Callable[[str], None]
CompleteCallback = Callable[[ProviderResponse], None]


class StreamHandle:
    """一次流式调用的句柄。

    - cancel(): 停止投递增量，on_complete 不会再被调用。
    - result(): 等待最终 ProviderResponse，或抛出流式过程中的错误。
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._started: asyncio.Future = asyncio.get_running_loop().create_future()
        self._cancelled = False

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task
        # 失败已通过 result()/wait_started() 传递，这里只避免未取回异常的告警
        task.add_done_callback(lambda t: t.cancelled() or t.exception())

    def _mark_started(self, error: Optional[BaseException] = None) -> None:
        if self._started.done():
            return
        if error is None:
            self._started.set_result(True)
        elif isinstance(error, asyncio.CancelledError):
            self._started.cancel()
        else:
            self._started.set_exception(error)

    async def wait_started(self) -> None:
        await self._started

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def result(self) -> ProviderResponse:
        if self._task is None:
            raise RuntimeError("stream was never started")
        return await self._task


class ChatProvider(Protocol):
    """对话后端协议。

    实现者需要提供：
    - name: 后端标识，用于日志与 registry。
    - model: 当前使用的模型 ID，用于判断是否需要首轮指令注入。
    - immediate_updates: 增量回调是否已经在消费者上下文中按可接受频率触发，
      为 True 时管理器绕过节流直接应用。
    - test_connection(): 连通性探测，出错时返回 False。
    - send_message(content, context): 阻塞式调用。
    - send_streaming_message(...): 流式调用，传输层在首个增量前失败时直接抛出。
    """

    name: str
    model: str
    immediate_updates: bool

    async def test_connection(self) -> bool:
        ...

    async def send_message(self, content: str, context: str) -> ProviderResponse:
        ...

    async def send_streaming_message(
        self,
        content: str,
        context: str,
        system_prompt: Optional[str],
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
    ) -> StreamHandle:
        ...


@dataclass
class StreamChunk:
    """后端流式协议解析后的单个增量。"""

    delta: str = ""
    token_count: Optional[int] = None


class StreamingProvider:
    """流式调用的公共驱动。

    子类只需实现 _stream_chunks()，产出 StreamChunk；
    本类负责累积内容、回调 on_update / on_complete、计时与句柄管理。
    """

    name = "base"
    immediate_updates = False

    def __init__(self, model: str):
        self.model = model

    async def send_streaming_message(
        self,
        content: str,
        context: str,
        system_prompt: Optional[str],
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
    ) -> StreamHandle:
        handle = StreamHandle()
        chunks = self._stream_chunks(content, context, system_prompt)
        task = asyncio.ensure_future(self._drive(chunks, handle, time.monotonic(), on_update, on_complete))
        handle._attach(task)
        try:
            await handle.wait_started()
        except asyncio.CancelledError:
            task.cancel()
            raise
        return handle

    async def _drive(
        self,
        chunks: AsyncIterator[StreamChunk],
        handle: StreamHandle,
        started_at: float,
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
    ) -> ProviderResponse:
        content = ""
        tokens: Optional[int] = None
        try:
            async for chunk in chunks:
                handle._mark_started()
                if chunk.token_count is not None:
                    tokens = chunk.token_count
                if chunk.delta:
                    content += chunk.delta
                    if not handle.cancelled:
                        on_update(content)
        except (Exception, asyncio.CancelledError) as exc:
            handle._mark_started(exc)
            raise
        handle._mark_started()
        response = ProviderResponse(
            content=self._finish_content(content),
            token_count=tokens,
            response_time=time.monotonic() - started_at,
            model=self.model,
        )
        if not handle.cancelled:
            on_complete(response)
        return response

    def _stream_chunks(
        self, content: str, context: str, system_prompt: Optional[str]
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    def _finish_content(self, content: str) -> str:
        return content

    async def _probe(self) -> bool:
        raise NotImplementedError

    async def test_connection(self) -> bool:
        try:
            ok = await self._probe()
        except Exception as exc:
            logger.log(logging.WARNING, "Connection test failed", extra={"extra": {"backend": self.name, "error": str(exc)}})
            return False
        return bool(ok)


def join_system_text(system_prompt: Optional[str], context: str, context_label: str = "User's Health Context:") -> str:
    """把人设与健康上下文合成一段 system 文本；两者皆空时返回空串。"""
    parts = []
    if system_prompt and system_prompt.strip():
        parts.append(system_prompt.strip())
    if context and context.strip():
        parts.append(f"{context_label}\n{context.strip()}" if parts else context.strip())
    return "\n\n".join(parts)


def raise_for_status(status_code: int, body: str, backend: str) -> None:
    if status_code == 429:
        raise RateLimitError(code="RATE_LIMIT", message=f"{backend} rate limit", http_status=429, backend=backend)
    if status_code in (401, 403):
        raise ValidationError(
            code="AUTH_FAILED",
            message=body or f"{backend} rejected credentials",
            http_status=status_code,
            backend=backend,
        )
    if status_code >= 400:
        raise ApiError(code="API_ERROR", message=body or f"HTTP {status_code}", http_status=status_code, backend=backend)


async def check_stream_status(resp, backend: str) -> None:
    if resp.status_code >= 400:
        raw = await resp.aread()
        body = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw or "")
        raise_for_status(resp.status_code, body, backend)


def network_error(exc: httpx.RequestError, backend: str) -> NetworkError:
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(code="TIMEOUT", message=str(exc) or "Request timed out", backend=backend)
    return NetworkError(code="NETWORK_ERROR", message=str(exc) or "Connection failed", backend=backend)


def parse_json(resp, backend: str) -> dict:
    try:
        data = resp.json()
    except ValueError as exc:
        raise DecodingError(code="DECODING_ERROR", message=f"{backend} returned invalid JSON: {exc}", backend=backend)
    if not isinstance(data, dict):
        raise DecodingError(code="DECODING_ERROR", message=f"{backend} returned unexpected payload", backend=backend)
    return data
