"""OpenAI 兼容推理服务适配器（LM Studio、vLLM、llama.cpp server 等）。

- URL: {base_url}/v1/chat/completions
- 认证: 可选 Authorization: Bearer <api_key>
- 流式: SSE，每行 "data: {...}"，以 "data: [DONE]" 结束。

只依赖公共字段：model/messages/max_tokens/stream，
响应解析兼容 message.content 与旧式 text 字段。
"""

import json
import time
from typing import Any, AsyncIterator, Dict, Optional

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
from chat_core.providers.registry import OPENAI_COMPATIBLE_CONFIG


class OpenAICompatibleClient(StreamingProvider):
    name = "openai_compatible"

    def __init__(self, cfg=settings, model: Optional[str] = None):
        super().__init__(model or cfg.openai_compatible_model)
        self._settings = cfg

    @property
    def base_url(self) -> str:
        base = getattr(self._settings, "openai_compatible_base_url", None) or OPENAI_COMPATIBLE_CONFIG.default_base_url
        base = base.rstrip("/")
        if base.endswith("/v1"):
            base = base[:-3]
        return base

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = getattr(self._settings, "openai_compatible_api_key", None)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    # ---- 非流式 ----

    async def send_message(self, content: str, context: str) -> ProviderResponse:
        payload = self._build_payload(content, context, None, stream=False)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{self.base_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            raise network_error(e, self.name)
        raise_for_status(resp.status_code, resp.text, self.name)
        data = parse_json(resp, self.name)
        return ProviderResponse(
            content=self._parse_content(data),
            token_count=self._parse_tokens(data.get("usage")),
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
                async with client.stream(
                    "POST",
                    f"{self.base_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    await check_stream_status(resp, self.name)
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        delta = ""
                        for ch in chunk.get("choices") or []:
                            delta += (ch.get("delta") or {}).get("content") or ch.get("text") or ""
                        tokens = self._parse_tokens(chunk.get("usage"))
                        if delta or tokens is not None:
                            yield StreamChunk(delta=delta, token_count=tokens)
        except httpx.RequestError as e:
            raise network_error(e, self.name)

    async def _probe(self) -> bool:
        async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
            resp = await client.get(f"{self.base_url}/v1/models", headers=self._headers())
        return resp.status_code == 200

    # ---- 辅助方法 ----

    def _build_payload(self, content: str, context: str, system_prompt: Optional[str], stream: bool) -> dict:
        messages = []
        system = join_system_text(system_prompt, context)
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": getattr(self._settings, "openai_compatible_max_tokens", 2048),
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _parse_content(data: dict) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise DecodingError(code="DECODING_ERROR", message="Response has no choices")
        first = choices[0] or {}
        message = first.get("message")
        if isinstance(message, dict) and message.get("content") is not None:
            return str(message["content"])
        if first.get("text") is not None:
            return str(first["text"])
        raise DecodingError(code="DECODING_ERROR", message="Response choice has no content")

    @staticmethod
    def _parse_tokens(usage: Any) -> Optional[int]:
        if not isinstance(usage, dict):
            return None
        for key in ("completion_tokens", "total_tokens"):
            if isinstance(usage.get(key), int):
                return usage[key]
        return None
