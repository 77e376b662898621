"""OpenAI 兼容的 chat/completions 客户端。

DeepSeek 等厂商均使用相同的端点与字段：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: stream=true 时以 SSE ``data: {...}`` 行返回增量，``data: [DONE]`` 结束。

本实现只依赖公共字段：model/messages/temperature/max_tokens/top_p/stream，
并把 httpx 的异常与 HTTP 状态码统一转换成 domain.exceptions 中的业务异常。
"""

import json
from typing import Any, AsyncIterator, Dict

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    AuthError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)
from chat_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
)
from chat_core.providers.registry import ModelConfig, get_model_config


class ChatCompletionsClient:
    """chat/completions Provider 客户端实现。"""

    name = "chat-completions"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        api_key = self._require_key()
        payload = self._build_payload(req, get_model_config(req.model), stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers(api_key))
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(code="TIMEOUT", message=str(e) or "request timed out", http_status=408)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp.status_code, resp.text)
        return self._parse_response(resp.json(), req)

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        api_key = self._require_key()
        payload = self._build_payload(req, get_model_config(req.model), stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._url(),
                    json=payload,
                    headers=self._headers(api_key),
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        self._raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"))
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
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(code="TIMEOUT", message=str(e) or "request timed out", http_status=408)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _require_key(self) -> str:
        api_key = getattr(self._settings, "completion_api_key", None)
        if not api_key:
            raise AuthError(code="MISSING_API_KEY", message="COMPLETION_API_KEY not set", http_status=401)
        return api_key

    def _url(self) -> str:
        base = getattr(self._settings, "completion_base_url", None) or "https://api.deepseek.com/v1"
        return f"{base.rstrip('/')}/chat/completions"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _raise_for_status(status_code: int, body: str) -> None:
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Rate limit exceeded", http_status=429)
        if status_code in (401, 403):
            raise AuthError(code="AUTH_FAILED", message=body or "Authentication failed", http_status=status_code)
        if status_code >= 400:
            raise ApiError(code="API_ERROR", message=body, http_status=status_code)

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig, stream: bool) -> dict:
        payload = {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
            "stream": stream,
        }
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or "")
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        return ChatResult(model=req.model, choices=choices, usage=self._parse_usage(data), raw=data)

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            delta = ch.get("delta") or {}
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatMessage(role=delta.get("role") or "assistant", content=delta.get("content") or ""),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatStreamChunk(model=req.model, choices=choices, usage=self._parse_usage(data), raw=data)

    @staticmethod
    def _parse_usage(data: dict):
        usage_raw = data.get("usage") or {}
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}
