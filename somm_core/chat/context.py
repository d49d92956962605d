"""上下文组装。

把会话的已持久化历史 + 本轮用户消息拼成发给 Provider 的消息列表：

1. 第一条永远是本模块注入的 system 指令；历史里的 system 消息一律丢弃，
   用户无法覆盖系统提示词。
2. 历史按原顺序追加；超过 max_history 条时，除最近 keep_recent 条以外的
   旧消息会被压缩成一条摘要（配置了 summarizer 时）或直接丢弃。
   摘要请求属于本轮，沿用本轮的 abort；取消时 Cancelled 原样向上抛出。
3. 本轮用户消息放在最后。
"""

import logging
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence

from somm_core.config.settings import settings
from somm_core.domain.exceptions import BusinessError
from somm_core.domain.models import ChatMessage, Role
from somm_core.domain.signals import AbortSignal
from somm_core.infrastructure.logging.logger import log_event
from somm_core.prompts import build_system_prompt


SUMMARY_TEMPLATE = "[Previous conversation summary: {summary}]"


class HistoryItem(Protocol):
    role: Role
    content: str


# summarizer(older, abort)：abort 为本轮的取消信号，取消时应抛出 Cancelled
Summarizer = Callable[[List[ChatMessage], Optional[AbortSignal]], str]


class ContextAssembler:
    def __init__(
        self,
        system_prompt: Optional[str] = None,
        max_history: Optional[int] = None,
        keep_recent: Optional[int] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self._system_prompt = system_prompt
        self._max_history = settings.max_context_messages if max_history is None else max_history
        keep = settings.context_keep_recent if keep_recent is None else keep_recent
        self._keep_recent = max(0, min(keep, self._max_history))
        self._summarizer = summarizer

    def directive(self, wine: Optional[Mapping[str, Any]] = None) -> str:
        if self._system_prompt is not None:
            return self._system_prompt
        return build_system_prompt(wine)

    def assemble(
        self,
        history: Sequence[HistoryItem],
        user_input: str,
        wine: Optional[Mapping[str, Any]] = None,
        log_ctx: Optional[dict] = None,
        abort: Optional[AbortSignal] = None,
    ) -> List[ChatMessage]:
        """返回 [system, *历史, user]，且只有第一条是 system。"""

        turns = [
            ChatMessage(role=item.role, content=item.content)
            for item in history
            if item.role != "system"
        ]
        turns = self._window(turns, log_ctx or {}, abort)
        messages = [ChatMessage(role="system", content=self.directive(wine))]
        messages.extend(turns)
        messages.append(ChatMessage(role="user", content=user_input))
        return messages

    def _window(self, turns: List[ChatMessage], log_ctx: dict, abort: Optional[AbortSignal]) -> List[ChatMessage]:
        if len(turns) <= self._max_history:
            return turns
        split = len(turns) - self._keep_recent
        older, recent = turns[:split], turns[split:]
        if self._summarizer is None:
            log_event(logging.INFO, "Truncated context", log_ctx, dropped=len(older), kept=len(recent))
            return recent
        try:
            summary = self._summarizer(older, abort).strip()
        except BusinessError as e:
            log_event(
                logging.WARNING,
                "Context summary failed; dropping older messages",
                log_ctx,
                dropped=len(older),
                error=e.message,
                code=e.code,
            )
            return recent
        log_event(logging.INFO, "Summarized context", log_ctx, summarized=len(older), kept=len(recent))
        if not summary:
            return recent
        return [ChatMessage(role="assistant", content=SUMMARY_TEMPLATE.format(summary=summary))] + recent
