"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 {base_url}/chat/completions 的 HTTP 请求。
3. 调用 HTTP 接口，并把状态码映射为 AuthError / RateLimitError /
   ModelUnavailableError / UnknownError 四类失败。
4. 将响应 JSON（或 SSE 流）解析为统一的 ChatResult / ChatStreamChunk。

流式调用支持 AbortSignal：取消时关闭底层响应，生成器正常结束。
"""

import json
from typing import Any, Dict, Iterable, Optional

import httpx

from somm_core.config.settings import settings
from somm_core.domain.exceptions import (
    ApiError,
    AuthError,
    Cancelled,
    ModelUnavailableError,
    NetworkError,
    RateLimitError,
)
from somm_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
)
from somm_core.domain.signals import AbortSignal
from somm_core.providers.registry import OPENAI_CONFIG, ModelConfig, ProviderConfig, resolve_model


_MODEL_MISSING_MARKERS = ("model_not_found", "does not exist", "model not found")


class OpenAICompatClient:
    """OpenAI 兼容接口的客户端实现。"""

    def __init__(self, cfg=settings, provider: ProviderConfig = OPENAI_CONFIG):
        self._settings = cfg
        self._provider = provider
        self.name = provider.name

    # ---- 非流式 ----

    def chat(self, req: ChatRequest, abort: Optional[AbortSignal] = None) -> ChatResult:
        api_key = self._require_key()
        model_cfg = resolve_model(self._provider, req.model)
        payload = self._build_payload(req, model_cfg, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                unsubscribe = abort.add_listener(client.close) if abort else None
                try:
                    resp = client.post(
                        f"{self._base_url()}/chat/completions",
                        json=payload,
                        headers=self._headers(api_key),
                    )
                finally:
                    if unsubscribe:
                        unsubscribe()
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=str(e) or "provider timed out", http_status=504)
        except httpx.HTTPError as e:
            # 取消会关闭 client，正在进行的请求以传输错误结束
            if abort is not None and abort.aborted:
                raise Cancelled() from e
            raise NetworkError(code="NETWORK_ERROR", message=str(e), http_status=502)
        except RuntimeError as e:
            # 已关闭的 client 拒绝发送请求
            if abort is not None and abort.aborted:
                raise Cancelled() from e
            raise
        self._raise_for_status(resp, model_cfg)
        try:
            return self._parse_response(resp.json(), req)
        except (ValueError, TypeError, AttributeError) as e:
            raise self._bad_response(e, model_cfg) from e

    # ---- 流式 ----

    def chat_stream(
        self, req: ChatRequest, abort: Optional[AbortSignal] = None
    ) -> Iterable[ChatStreamChunk]:
        api_key = self._require_key()
        model_cfg = resolve_model(self._provider, req.model)
        payload = self._build_payload(req, model_cfg, stream=True)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(api_key),
                ) as resp:
                    unsubscribe = abort.add_listener(resp.close) if abort else None
                    try:
                        if resp.status_code >= 400:
                            resp.read()
                            self._raise_for_status(resp, model_cfg)
                        for line in resp.iter_lines():
                            if abort is not None and abort.aborted:
                                return
                            data = self._parse_sse_line(line)
                            if data is None:
                                continue
                            try:
                                chunk = self._parse_stream_chunk(data, req)
                            except (TypeError, AttributeError) as e:
                                raise self._bad_response(e, model_cfg) from e
                            yield chunk
                    finally:
                        if unsubscribe:
                            unsubscribe()
        except httpx.TimeoutException as e:
            if abort is not None and abort.aborted:
                return
            raise NetworkError(code="TIMEOUT", message=str(e) or "provider timed out", http_status=504)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if abort is not None and abort.aborted:
                return
            raise NetworkError(code="NETWORK_ERROR", message=str(e), http_status=502)

    # ---- helpers ----

    def _require_key(self) -> str:
        api_key = getattr(self._settings, f"{self._provider.name}_api_key", None)
        if not api_key:
            raise AuthError(
                code="MISSING_API_KEY",
                message=f"{self._provider.name.upper()}_API_KEY not set",
                http_status=401,
            )
        return api_key

    def _base_url(self) -> str:
        base = getattr(self._settings, f"{self._provider.name}_base_url", None) or self._provider.base_url
        return base.rstrip("/")

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig, stream: bool) -> dict:
        """将 ChatRequest 转成 chat/completions 请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "presence_penalty": req.presence_penalty,
            "frequency_penalty": req.frequency_penalty,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                return str(err.get("message") or err.get("code") or resp.text)
            if isinstance(err, str):
                return err
        return resp.text

    def _raise_for_status(self, resp: httpx.Response, model_cfg: ModelConfig) -> None:
        status = resp.status_code
        if status < 400:
            return
        message = self._error_message(resp)
        lowered = (resp.text or "").lower()
        extra = {"model": model_cfg.provider_model}
        if status in (401, 403):
            raise AuthError(code="AUTH_ERROR", message=message, http_status=status, **extra)
        if status == 429:
            raise RateLimitError(code="RATE_LIMIT", message=message, http_status=status, **extra)
        if status in (404, 503) or any(marker in lowered for marker in _MODEL_MISSING_MARKERS):
            raise ModelUnavailableError(code="MODEL_UNAVAILABLE", message=message, http_status=status, **extra)
        raise ApiError(code="API_ERROR", message=message, http_status=status, **extra)

    @staticmethod
    def _bad_response(error: Exception, model_cfg: ModelConfig) -> ApiError:
        # 2xx 但响应体不是预期的 JSON 结构，例如网关返回的 HTML 页面
        return ApiError(
            code="BAD_RESPONSE",
            message=f"malformed provider response: {error}",
            http_status=502,
            model=model_cfg.provider_model,
        )

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[dict]:
        if not line:
            return None
        data_str = line[5:].strip() if line.startswith("data:") else line.strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            return json.loads(data_str)
        except json.JSONDecodeError:
            return None

    @staticmethod
    def _parse_usage(raw: Optional[dict]) -> Optional[ChatUsage]:
        if not raw:
            return None
        return ChatUsage(
            prompt_tokens=raw.get("prompt_tokens", 0),
            completion_tokens=raw.get("completion_tokens", 0),
            total_tokens=raw.get("total_tokens", 0),
        )

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult。"""

        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            choices.append(
                ChatChoice(
                    index=i,
                    message=ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or ""),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。"""

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
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )
