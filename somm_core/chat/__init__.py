"""对话管线。

- context: ContextAssembler，拼装发给 Provider 的消息列表。
- completion: CompletionClient，主模型/备用模型、单次与流式调用。
- transcript: TranscriptStore，界面可见的有序消息列表。
- turn: TurnController，一轮对话的状态机。
"""

from somm_core.chat.completion import Completion, CompletionClient, Fragment
from somm_core.chat.context import ContextAssembler
from somm_core.chat.transcript import TranscriptStore
from somm_core.chat.turn import Turn, TurnController, TurnState

__all__ = [
    "Completion",
    "CompletionClient",
    "ContextAssembler",
    "Fragment",
    "TranscriptStore",
    "Turn",
    "TurnController",
    "TurnState",
]
