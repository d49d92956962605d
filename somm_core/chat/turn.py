"""Turn Controller：一轮对话的端到端编排。

状态机::

    idle → sending → (streaming | awaiting) → completed | failed | cancelled

- 同一时间只允许一轮在进行；并发提交直接拒绝（TurnInProgressError），不排队，
  被拒绝的提交不会改动 transcript。
- 流式路径先追加一条空的 assistant 占位消息，每收到一个片段就追加内容并重新发布。
- 单次路径在 Provider 返回后一次性追加完整的 assistant 消息。
- 失败：错误原样抛给调用方，已产生的部分内容保留并标记 incomplete。
- 取消：外部 abort 触发，停止应用后续片段，占位消息标记 incomplete，不算失败。
- 成功：用户消息与最终 assistant 消息在同一次写入中各持久化一次。
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from somm_core.chat.completion import CompletionClient
from somm_core.chat.context import ContextAssembler
from somm_core.chat.transcript import TranscriptStore
from somm_core.config.settings import settings
from somm_core.domain.conversation import ConversationStore, Message
from somm_core.domain.exceptions import (
    BusinessError,
    Cancelled,
    TurnInProgressError,
    UnknownError,
    ValidationError,
)
from somm_core.domain.models import ChatUsage
from somm_core.domain.signals import AbortSignal
from somm_core.infrastructure.logging.logger import log_event


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    AWAITING = "awaiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.FAILED, TurnState.CANCELLED)


@dataclass
class Turn:
    """一轮对话的临时状态，不持久化。"""

    id: str
    user_message: Message
    abort: AbortSignal
    wine: Optional[Mapping[str, Any]] = None
    state: TurnState = TurnState.IDLE
    assistant_message: Optional[Message] = None
    error: Optional[BusinessError] = None
    usage: Optional[ChatUsage] = None
    model: Optional[str] = None
    persisted: List[Message] = field(default_factory=list)


class TurnController:
    def __init__(
        self,
        store: ConversationStore,
        transcript: TranscriptStore,
        completion: CompletionClient,
        assembler: ContextAssembler,
        streaming: Optional[bool] = None,
    ):
        self._store = store
        self._transcript = transcript
        self._completion = completion
        self._assembler = assembler
        self._streaming = settings.enable_streaming if streaming is None else streaming
        self._current: Optional[Turn] = None
        self._slot_lock = threading.Lock()
        # 取消与片段应用互斥：cancel_turn 返回后不会再有片段被应用
        self._apply_lock = threading.Lock()

    @property
    def conversation_id(self) -> str:
        return self._transcript.conversation_id

    @property
    def transcript(self) -> TranscriptStore:
        return self._transcript

    @property
    def current_turn(self) -> Optional[Turn]:
        return self._current

    @property
    def in_flight(self) -> bool:
        return self._current is not None

    def send_turn(self, text: str, wine: Optional[Mapping[str, Any]] = None) -> Turn:
        """同步执行一轮对话，返回处于终态的 Turn；失败时抛出对应的业务异常。"""

        return self.run(self.begin(text, wine))

    def begin(self, text: str, wine: Optional[Mapping[str, Any]] = None) -> Turn:
        """占用唯一的在途名额并创建 Turn，不做任何 IO。"""

        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="message must not be empty")
        with self._slot_lock:
            if self._current is not None:
                log_event(
                    logging.WARNING,
                    "Rejected concurrent turn",
                    {"conversation_id": self.conversation_id},
                    active_turn=self._current.id,
                )
                raise TurnInProgressError(
                    code="TURN_IN_PROGRESS",
                    message="a reply is still being generated",
                    http_status=409,
                )
            turn = Turn(
                id=f"t-{uuid4().hex}",
                user_message=Message(role="user", content=text, conversation_id=self.conversation_id),
                abort=AbortSignal(),
                wine=wine,
            )
            self._current = turn
        return turn

    def cancel_turn(self) -> bool:
        """取消进行中的一轮；没有在途的轮次时返回 False。"""

        turn = self._current
        if turn is None:
            return False
        with self._apply_lock:
            turn.abort.abort()
        return True

    def run(self, turn: Turn) -> Turn:
        if turn is not self._current:
            raise ValidationError(code="TURN_NOT_ACTIVE", message=f"turn {turn.id} does not hold the slot")
        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": turn.id, "conversation_id": self.conversation_id}
        try:
            turn.state = TurnState.SENDING
            log_event(logging.INFO, "Turn started", log_ctx)
            self._transcript.append(turn.user_message)

            history = self._store.get_messages_by_conversation(self.conversation_id)
            messages = self._assembler.assemble(
                history, turn.user_message.content, turn.wine, log_ctx, abort=turn.abort
            )
            if turn.abort.aborted:
                self._finish_cancelled(turn, log_ctx)
                return turn

            if self._streaming:
                self._run_stream(turn, messages, log_ctx)
            else:
                self._run_single(turn, messages, log_ctx)

            if turn.abort.aborted:
                self._finish_cancelled(turn, log_ctx)
                return turn

            self._persist(turn, log_ctx)
            turn.state = TurnState.COMPLETED
            log_event(
                logging.INFO,
                "Turn completed",
                log_ctx,
                model=turn.model,
                elapsed_seconds=round(time.time() - start_time, 2),
            )
            return turn
        except Cancelled:
            self._finish_cancelled(turn, log_ctx)
            return turn
        except BusinessError as e:
            turn.state = TurnState.FAILED
            turn.error = e
            self._mark_incomplete(turn)
            log_event(logging.ERROR, "Turn failed", log_ctx, code=e.code, error=e.message, http_status=e.http_status)
            raise
        except Exception as e:
            # 非业务异常也要让本轮进入终态，再统一成 UnknownError 抛出
            error = UnknownError(code="UNKNOWN", message=f"{type(e).__name__}: {e}", http_status=500)
            turn.state = TurnState.FAILED
            turn.error = error
            self._mark_incomplete(turn)
            log_event(logging.ERROR, "Turn failed unexpectedly", log_ctx, code=error.code, error=error.message)
            raise error from e
        finally:
            with self._slot_lock:
                if self._current is turn:
                    self._current = None

    def _run_stream(self, turn: Turn, messages, log_ctx: Dict[str, Any]) -> None:
        turn.state = TurnState.STREAMING
        assistant = Message(role="assistant", content="", conversation_id=self.conversation_id)
        turn.assistant_message = assistant
        self._transcript.append(assistant)
        fragments = self._completion.stream(messages, turn.abort, log_ctx)
        try:
            for fragment in fragments:
                with self._apply_lock:
                    if turn.abort.aborted:
                        break
                    turn.model = fragment.model
                    if fragment.usage:
                        turn.usage = fragment.usage
                    if fragment.content:
                        assistant.content += fragment.content
                        self._transcript.update(assistant)
        finally:
            fragments.close()

    def _run_single(self, turn: Turn, messages, log_ctx: Dict[str, Any]) -> None:
        turn.state = TurnState.AWAITING
        result = self._completion.complete(messages, turn.abort, log_ctx)
        with self._apply_lock:
            if turn.abort.aborted:
                return
            turn.model = result.model
            turn.usage = result.usage
            turn.assistant_message = Message(
                role="assistant",
                content=result.content,
                conversation_id=self.conversation_id,
            )
            self._transcript.append(turn.assistant_message)

    def _persist(self, turn: Turn, log_ctx: Dict[str, Any]) -> None:
        assistant = turn.assistant_message
        user_rec, assistant_rec = self._store.create_messages(
            self.conversation_id,
            [
                (turn.user_message.content, "user"),
                (assistant.content if assistant else "", "assistant"),
            ],
        )
        turn.persisted = [user_rec, assistant_rec]
        log_event(
            logging.INFO,
            "Stored turn messages",
            log_ctx,
            user_message_id=user_rec.id,
            assistant_message_id=assistant_rec.id,
        )

    def _finish_cancelled(self, turn: Turn, log_ctx: Dict[str, Any]) -> None:
        turn.state = TurnState.CANCELLED
        self._mark_incomplete(turn)
        content = turn.assistant_message.content if turn.assistant_message else ""
        log_event(logging.INFO, "Turn cancelled", log_ctx, applied_chars=len(content))

    def _mark_incomplete(self, turn: Turn) -> None:
        assistant = turn.assistant_message
        if assistant is None or assistant.incomplete:
            return
        assistant.incomplete = True
        self._transcript.update(assistant)
