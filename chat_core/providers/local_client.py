"""本地推理运行时适配器。

本地模型以同步 token 生成器的形式注入（engine(prompt, max_tokens) -> Iterable[str]），
在工作线程中运行，token 通过 loop.call_soon_threadsafe 交回事件循环。
由于增量回调已经运行在事件循环上，immediate_updates 为 True，
管理器会绕过节流直接应用。

本地模型不区分 system 字段，这里按 Phi-3 聊天模板拼接完整提示词，
并在结束时清洗模板残留的特殊标记。
"""

import asyncio
import threading
import time
from typing import AsyncIterator, Callable, Iterable, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import ProviderResponse
from chat_core.providers.base import StreamChunk, StreamingProvider
from chat_core.providers.response_cleaner import clean_response, remove_special_tokens

TokenEngine = Callable[[str, int], Iterable[str]]
CONTEXT_HEADER = "PATIENT HEALTH INFORMATION:"


def build_prompt(content: str, context: str, system_prompt: Optional[str]) -> str:
    """Phi-3 聊天模板。"""
    user = content
    if context and context.strip():
        user = f"{CONTEXT_HEADER}\n{context.strip()}\n\n{content}"
    prompt = "<s>"
    if system_prompt and system_prompt.strip():
        prompt += f"<|system|>\n{system_prompt.strip()}<|end|>\n"
    prompt += f"<|user|>\n{user}<|end|>\n<|assistant|>\n"
    return prompt


def _runtime_error(exc: Exception) -> BusinessError:
    if isinstance(exc, BusinessError):
        return exc
    return BusinessError(code="LOCAL_RUNTIME_ERROR", message=str(exc) or type(exc).__name__, http_status=500)


class LocalRuntimeClient(StreamingProvider):
    name = "local"
    immediate_updates = True

    def __init__(self, engine: Optional[TokenEngine] = None, cfg=settings, model: Optional[str] = None):
        super().__init__(model or cfg.local_model)
        self._engine = engine
        self._max_tokens = getattr(cfg, "local_max_tokens", 512)

    def _require_engine(self) -> TokenEngine:
        if self._engine is None:
            raise ValidationError(code="LOCAL_RUNTIME_UNAVAILABLE", message="No local model runtime loaded")
        return self._engine

    async def test_connection(self) -> bool:
        return self._engine is not None

    async def send_message(self, content: str, context: str) -> ProviderResponse:
        engine = self._require_engine()
        prompt = build_prompt(content, context, None)
        started = time.monotonic()

        def generate() -> List[str]:
            return list(engine(prompt, self._max_tokens))

        try:
            tokens = await asyncio.to_thread(generate)
        except Exception as exc:
            raise _runtime_error(exc)
        return ProviderResponse(
            content=clean_response("".join(tokens)),
            token_count=len(tokens),
            response_time=time.monotonic() - started,
            model=self.model,
        )

    async def _stream_chunks(
        self, content: str, context: str, system_prompt: Optional[str]
    ) -> AsyncIterator[StreamChunk]:
        engine = self._require_engine()
        prompt = build_prompt(content, context, system_prompt)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        cancel = threading.Event()

        def post(kind: str, payload) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (kind, payload))
            except RuntimeError:
                # 事件循环已关闭
                cancel.set()

        def produce() -> None:
            try:
                for token in engine(prompt, self._max_tokens):
                    if cancel.is_set():
                        return
                    post("token", token)
            except Exception as exc:
                post("error", exc)
                return
            post("done", None)

        worker = threading.Thread(target=produce, name="local-runtime-worker", daemon=True)
        worker.start()
        count = 0
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "token":
                    count += 1
                    yield StreamChunk(delta=remove_special_tokens(payload))
                elif kind == "error":
                    raise _runtime_error(payload)
                else:
                    break
            yield StreamChunk(token_count=count)
        finally:
            cancel.set()

    def _finish_content(self, content: str) -> str:
        return clean_response(content)
