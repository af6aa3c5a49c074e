"""Ollama 自托管推理服务适配器。

- 对话: POST {base_url}/api/chat，stream=true 时按行返回 NDJSON。
- 连通性: GET {base_url}/api/tags（列出本地模型）。

人设与健康上下文合并为一条 system 消息发送。
"""

import json
import time
from typing import AsyncIterator, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import DecodingError
from chat_core.domain.models import ProviderResponse
from chat_core.providers.base import (
    StreamChunk,
    StreamingProvider,
    check_stream_status,
    join_system_text,
    network_error,
    parse_json,
    raise_for_status,
)
from chat_core.providers.registry import OLLAMA_CONFIG


class OllamaClient(StreamingProvider):
    """Ollama Provider 客户端实现。"""

    name = "ollama"

    def __init__(self, cfg=settings, model: Optional[str] = None):
        super().__init__(model or cfg.ollama_model)
        self._settings = cfg

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "ollama_base_url", None) or OLLAMA_CONFIG.default_base_url).rstrip("/")

    # ---- 非流式 ----

    async def send_message(self, content: str, context: str) -> ProviderResponse:
        payload = self._build_payload(content, context, None, stream=False)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.RequestError as e:
            raise network_error(e, self.name)
        raise_for_status(resp.status_code, resp.text, self.name)
        data = parse_json(resp, self.name)
        message = data.get("message") or {}
        if "content" not in message:
            raise DecodingError(code="DECODING_ERROR", message="Ollama response has no message content")
        return ProviderResponse(
            content=message.get("content") or "",
            token_count=data.get("eval_count"),
            response_time=time.monotonic() - started,
            model=data.get("model") or self.model,
        )

    # ---- 流式 ----

    async def _stream_chunks(
        self, content: str, context: str, system_prompt: Optional[str]
    ) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(content, context, system_prompt, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=payload) as resp:
                    await check_stream_status(resp, self.name)
                    async for line in resp.aiter_lines():
                        if not line or not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            raise DecodingError(code="STREAM_ERROR", message=str(data["error"]))
                        delta = (data.get("message") or {}).get("content") or ""
                        tokens = data.get("eval_count") if data.get("done") else None
                        if delta or tokens is not None:
                            yield StreamChunk(delta=delta, token_count=tokens)
        except httpx.RequestError as e:
            raise network_error(e, self.name)

    async def _probe(self) -> bool:
        async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
            resp = await client.get(f"{self.base_url}/api/tags")
        return resp.status_code == 200

    # ---- 辅助方法 ----

    def _build_payload(self, content: str, context: str, system_prompt: Optional[str], stream: bool) -> dict:
        messages = []
        system = join_system_text(system_prompt, context)
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})
        return {"model": self.model, "messages": messages, "stream": stream}

