"""托管云服务适配器（Messages 风格 API）。

- URL: {base_url}/v1/messages
- 认证: x-api-key 头 + anthropic-version 头
- 人设与健康上下文通过顶层 system 字段发送，不作为消息。
- 流式: SSE 事件 content_block_delta 携带文本增量，
  message_delta 携带最终 output_tokens，error 事件转换为 ApiError。

连通性检查只确认凭据已配置，不发起网络请求。
"""

import json
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, DecodingError, ValidationError
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
from chat_core.providers.registry import CLOUD_CONFIG

API_VERSION = "2023-06-01"


class CloudClient(StreamingProvider):
    name = "cloud"

    def __init__(self, cfg=settings, model: Optional[str] = None):
        super().__init__(model or cfg.cloud_model)
        self._settings = cfg

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "cloud_base_url", None) or CLOUD_CONFIG.default_base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        key = getattr(self._settings, "cloud_api_key", None)
        if not key:
            raise ValidationError(code="MISSING_API_KEY", message="CLOUD_API_KEY not set")
        return {
            "x-api-key": key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    async def test_connection(self) -> bool:
        return bool(getattr(self._settings, "cloud_api_key", None))

    # ---- 非流式 ----

    async def send_message(self, content: str, context: str) -> ProviderResponse:
        headers = self._headers()
        payload = self._build_payload(content, context, None, stream=False)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(f"{self.base_url}/v1/messages", json=payload, headers=headers)
        except httpx.RequestError as e:
            raise network_error(e, self.name)
        raise_for_status(resp.status_code, resp.text, self.name)
        data = parse_json(resp, self.name)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise DecodingError(code="DECODING_ERROR", message="Cloud response has no content blocks")
        text = "".join(b.get("text") or "" for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=text,
            token_count=usage.get("output_tokens"),
            response_time=time.monotonic() - started,
            model=data.get("model") or self.model,
        )

    # ---- 流式 ----

    async def _stream_chunks(
        self, content: str, context: str, system_prompt: Optional[str]
    ) -> AsyncIterator[StreamChunk]:
        headers = self._headers()
        payload = self._build_payload(content, context, system_prompt, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", f"{self.base_url}/v1/messages", json=payload, headers=headers) as resp:
                    await check_stream_status(resp, self.name)
                    async for line in resp.aiter_lines():
                        if not line or not line.startswith("data:"):
                            continue
                        try:
                            event = json.loads(line[5:].strip())
                        except json.JSONDecodeError:
                            continue
                        chunk = self._parse_event(event)
                        if chunk is not None:
                            yield chunk
        except httpx.RequestError as e:
            raise network_error(e, self.name)

    # ---- 辅助方法 ----

    def _build_payload(self, content: str, context: str, system_prompt: Optional[str], stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": getattr(self._settings, "cloud_max_tokens", 2048),
            "messages": [{"role": "user", "content": content}],
            "stream": stream,
        }
        system = join_system_text(system_prompt, context)
        if system:
            payload["system"] = system
        return payload

    @staticmethod
    def _parse_event(event: dict) -> Optional[StreamChunk]:
        kind = event.get("type")
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type", "text_delta") == "text_delta":
                return StreamChunk(delta=delta.get("text") or "")
        elif kind == "message_delta":
            usage = event.get("usage") or {}
            if isinstance(usage.get("output_tokens"), int):
                return StreamChunk(token_count=usage["output_tokens"])
        elif kind == "error":
            err = event.get("error") or {}
            status = 529 if err.get("type") == "overloaded_error" else 500
            raise ApiError(code="STREAM_ERROR", message=err.get("message") or "stream error", http_status=status)
        return None
