"""Completion Client：主模型 + 备用模型。

- complete(messages): 单次调用，返回 Completion(content, usage, model)。
- stream(messages): 惰性、有限、不可重启的 Fragment 序列，调用方负责拼接。

只有 ModelUnavailableError 会触发一次备用模型重试（同样的消息列表、同样的
采样参数）；其他错误立即向上抛出，不做静默重试。流式调用在已经产出内容之后
不再切换模型。

取消：每个挂起点之前检查 AbortSignal，并把它传给 Provider 以便关闭连接。
complete 被取消时抛出 Cancelled；stream 被取消时序列直接结束。
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

from somm_core.config.settings import settings
from somm_core.domain.exceptions import BusinessError, Cancelled, ModelUnavailableError
from somm_core.domain.models import ChatMessage, ChatRequest, ChatUsage
from somm_core.domain.signals import AbortSignal
from somm_core.infrastructure.logging.logger import log_event
from somm_core.providers.base import ProviderClient


DEFAULT_TITLE = "New Conversation"

TITLE_PROMPT = (
    "Generate a short, concise title (maximum 5 words) for a conversation that starts "
    "with this message. Respond with only the title text, nothing else."
)

SUMMARY_PROMPT = (
    "Summarize the following conversation between a guest and a sommelier in three "
    "sentences or fewer. Keep wines, food pairings and preferences the guest mentioned."
)


@dataclass
class Completion:
    content: str
    usage: Optional[ChatUsage]
    model: str


@dataclass
class Fragment:
    """流式返回的一段内容；最后一段可能只携带 usage。"""

    content: str
    model: str
    usage: Optional[ChatUsage] = None


class CompletionClient:
    def __init__(
        self,
        provider: ProviderClient,
        primary_model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        cfg=settings,
    ):
        self._provider = provider
        self._settings = cfg
        self.primary_model = primary_model or cfg.primary_model
        fallback = fallback_model if fallback_model is not None else cfg.fallback_model
        self.fallback_model = fallback if fallback and fallback != self.primary_model else None

    def _models(self) -> List[str]:
        if self.fallback_model:
            return [self.primary_model, self.fallback_model]
        return [self.primary_model]

    def _request(self, model: str, messages: Sequence[ChatMessage], **overrides) -> ChatRequest:
        params = dict(
            temperature=self._settings.temperature,
            max_tokens=self._settings.max_tokens,
            presence_penalty=self._settings.presence_penalty,
            frequency_penalty=self._settings.frequency_penalty,
        )
        params.update(overrides)
        return ChatRequest(
            provider=self._provider.name,
            model=model,
            messages=list(messages),
            **params,
        )

    def complete(
        self,
        messages: Sequence[ChatMessage],
        abort: Optional[AbortSignal] = None,
        log_ctx: Optional[Dict] = None,
        **overrides,
    ) -> Completion:
        log_ctx = log_ctx or {}
        models = self._models()
        for attempt, model in enumerate(models):
            if abort is not None and abort.aborted:
                raise Cancelled()
            req = self._request(model, messages, **overrides)
            log_event(
                logging.INFO,
                "Calling provider",
                log_ctx,
                provider=self._provider.name,
                model=model,
                message_count=len(req.messages),
            )
            try:
                result = self._provider.chat(req, abort)
            except ModelUnavailableError as e:
                if attempt + 1 >= len(models):
                    raise
                self._log_fallback(log_ctx, model, models[attempt + 1], e)
                continue
            if abort is not None and abort.aborted:
                raise Cancelled()
            if result.usage:
                log_event(logging.INFO, "Token usage", log_ctx, model=model, **result.usage.as_meta())
            return Completion(content=result.content, usage=result.usage, model=model)

    def stream(
        self,
        messages: Sequence[ChatMessage],
        abort: Optional[AbortSignal] = None,
        log_ctx: Optional[Dict] = None,
    ) -> Iterator[Fragment]:
        log_ctx = log_ctx or {}
        models = self._models()
        for attempt, model in enumerate(models):
            if abort is not None and abort.aborted:
                return
            req = self._request(model, messages)
            log_event(
                logging.INFO,
                "Calling provider (stream)",
                log_ctx,
                provider=self._provider.name,
                model=model,
                message_count=len(req.messages),
            )
            produced = False
            try:
                for chunk in self._provider.chat_stream(req, abort):
                    if abort is not None and abort.aborted:
                        return
                    text = chunk.content
                    if chunk.usage:
                        log_event(logging.INFO, "Token usage", log_ctx, model=model, **chunk.usage.as_meta())
                    if not text and not chunk.usage:
                        continue
                    produced = produced or bool(text)
                    yield Fragment(content=text, model=model, usage=chunk.usage)
                return
            except ModelUnavailableError as e:
                if produced or attempt + 1 >= len(models):
                    raise
                self._log_fallback(log_ctx, model, models[attempt + 1], e)

    def generate_title(self, first_message: str, log_ctx: Optional[Dict] = None) -> str:
        """根据首条用户消息生成会话标题，失败时返回默认标题。"""

        messages = [
            ChatMessage(role="system", content=TITLE_PROMPT),
            ChatMessage(role="user", content=first_message),
        ]
        try:
            result = self.complete(messages, log_ctx=log_ctx, max_tokens=20)
        except BusinessError as e:
            log_event(logging.WARNING, "Title generation failed", log_ctx or {}, error=e.message, code=e.code)
            return DEFAULT_TITLE
        title = result.content.strip().strip('"').strip()
        return title or DEFAULT_TITLE

    def summarize(self, messages: Sequence[ChatMessage], abort: Optional[AbortSignal] = None) -> str:
        """把较早的对话压缩成摘要，供 ContextAssembler 使用；abort 触发时抛出 Cancelled。"""

        transcript = "\n".join(f"{m.role}: {m.content}" for m in messages)
        prompt = [
            ChatMessage(role="system", content=SUMMARY_PROMPT),
            ChatMessage(role="user", content=transcript),
        ]
        return self.complete(prompt, abort, max_tokens=200).content

    def _log_fallback(self, log_ctx: Dict, model: str, fallback: str, error: BusinessError) -> None:
        log_event(
            logging.WARNING,
            "Primary model unavailable; retrying with fallback",
            log_ctx,
            model=model,
            fallback_model=fallback,
            error=error.message,
            http_status=error.http_status,
        )
