"""对外 API 服务模块。

ChatService 是应用根对象：持有存储、Provider、对话管线与唯一的 SpeechPlayer，
并向 UI 暴露 send_turn / cancel_turn / speak / mute / resume。
send_turn 是“发出即返回”的：结果通过 TranscriptStore 的订阅回调观察。
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional

from somm_core.chat.completion import DEFAULT_TITLE, CompletionClient
from somm_core.chat.context import ContextAssembler
from somm_core.chat.transcript import TranscriptStore
from somm_core.chat.turn import Turn, TurnController, TurnState
from somm_core.config.settings import settings
from somm_core.domain.conversation import Conversation, ConversationStore, Message
from somm_core.domain.exceptions import BusinessError, ValidationError
from somm_core.infrastructure.logging.logger import log_event
from somm_core.infrastructure.storage.json_store import JsonConversationStore
from somm_core.providers import create_provider
from somm_core.providers.base import ProviderClient
from somm_core.voice.engine import SpeechEngine
from somm_core.voice.player import SpeechPlayer
from somm_core.voice.text import speakable_text


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        provider: ProviderClient,
        player: Optional[SpeechPlayer] = None,
        streaming: Optional[bool] = None,
        auto_title: bool = True,
    ):
        self._store = store
        self._completion = CompletionClient(provider)
        self._assembler = ContextAssembler(summarizer=self._completion.summarize)
        self._player = player
        self._streaming = streaming
        self._auto_title = auto_title
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="somm-turn")
        self._controller: Optional[TurnController] = None
        self._conversation: Optional[Conversation] = None

    # ---- 会话 ----

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._conversation

    @property
    def transcript(self) -> TranscriptStore:
        return self._require_controller().transcript

    def start_conversation(self, title: str = DEFAULT_TITLE, user_id: Optional[str] = None) -> Conversation:
        conv = self._store.create_conversation(title, user_id)
        self._activate(conv, [])
        return conv

    def open_conversation(self, conversation_id: str) -> Conversation:
        conv = self._store.get_conversation(conversation_id)
        self._activate(conv, self._store.get_messages_by_conversation(conv.id))
        return conv

    def subscribe(self, listener: Callable[[Message], None]) -> Callable[[], None]:
        return self.transcript.subscribe(listener)

    # ---- 对话 ----

    def send_turn(self, text: str, wine: Optional[Mapping[str, Any]] = None) -> "Future[Turn]":
        """提交一轮对话。已有在途轮次时立即抛出 TurnInProgressError。"""

        controller = self._require_controller()
        turn = controller.begin(text, wine)
        first_turn = len(controller.transcript) == 0
        return self._executor.submit(self._run_turn, controller, turn, first_turn)

    def cancel_turn(self) -> bool:
        if self._controller is None:
            return False
        return self._controller.cancel_turn()

    def _run_turn(self, controller: TurnController, turn: Turn, first_turn: bool) -> Turn:
        controller.run(turn)
        if first_turn and self._auto_title and turn.state is TurnState.COMPLETED:
            self._retitle(turn)
        return turn

    def _retitle(self, turn: Turn) -> None:
        conv = self._conversation
        if conv is None or conv.title != DEFAULT_TITLE:
            return
        log_ctx = {"trace_id": turn.id, "conversation_id": conv.id}
        title = self._completion.generate_title(turn.user_message.content, log_ctx)
        if title == DEFAULT_TITLE:
            return
        try:
            self._store.update_conversation_title(conv.id, title)
        except BusinessError as e:
            log_event(logging.WARNING, "Failed to store conversation title", log_ctx, error=e.message)
            return
        conv.title = title

    # ---- 语音 ----

    def speak(self, text: str) -> bool:
        return self._require_player().speak(text)

    def speak_last_reply(self) -> bool:
        message = self.transcript.last(role="assistant")
        if message is None:
            return False
        return self._require_player().speak(speakable_text(message.content))

    def mute(self) -> bool:
        return self._require_player().mute()

    def resume(self) -> bool:
        return self._require_player().resume()

    def stop_speaking(self) -> None:
        self._require_player().stop()

    def shutdown(self) -> None:
        self.cancel_turn()
        if self._player is not None:
            self._player.stop()
        self._executor.shutdown(wait=True)

    # ---- helpers ----

    def _activate(self, conv: Conversation, history: List[Message]) -> None:
        if self._controller is not None and self._controller.in_flight:
            self._controller.cancel_turn()
        self._conversation = conv
        self._controller = TurnController(
            store=self._store,
            transcript=TranscriptStore(conv.id, history),
            completion=self._completion,
            assembler=self._assembler,
            streaming=self._streaming,
        )

    def _require_controller(self) -> TurnController:
        if self._controller is None:
            raise ValidationError(code="NO_CONVERSATION", message="no active conversation")
        return self._controller

    def _require_player(self) -> SpeechPlayer:
        if self._player is None:
            raise ValidationError(code="SPEECH_DISABLED", message="speech playback is not configured")
        return self._player


_service: Optional[ChatService] = None


def get_default_service(engine: Optional[SpeechEngine] = None) -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _service
    if _service is None:
        player = SpeechPlayer(engine) if engine is not None else None
        _service = ChatService(
            store=JsonConversationStore(root=settings.storage_root),
            provider=create_provider(),
            player=player,
        )
    return _service


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "conversationId": message.conversation_id,
        "createdAt": message.created_at.isoformat(),
        "incomplete": message.incomplete,
    }


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有已持久化消息。"""
    service = get_default_service()
    return [message_to_dict(m) for m in service._store.get_messages_by_conversation(conversation_id)]


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有会话。"""
    service = get_default_service()
    return [
        {
            "id": c.id,
            "title": c.title,
            "userId": c.user_id,
            "createdAt": c.created_at.isoformat(),
        }
        for c in service._store.list_conversations()
    ]
