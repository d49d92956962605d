"""Transcript Store：一个会话在界面上可见的有序消息列表。

只有 TurnController 会写入；观察者通过 subscribe 收到每次 append/update 后的
消息快照，流式过程中看到的 content 单调增长。
"""

import threading
from typing import Callable, List, Optional

from somm_core.domain.conversation import Message


Listener = Callable[[Message], None]


class TranscriptStore:
    def __init__(self, conversation_id: str, messages: Optional[List[Message]] = None):
        self.conversation_id = conversation_id
        self._messages: List[Message] = list(messages or [])
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    @property
    def messages(self) -> List[Message]:
        with self._lock:
            return [m.model_copy() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    def last(self, role: Optional[str] = None) -> Optional[Message]:
        with self._lock:
            for message in reversed(self._messages):
                if role is None or message.role == role:
                    return message.model_copy()
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
        self._publish(message)

    def update(self, message: Message) -> None:
        """重新发布一条已存在的消息（按 id 匹配）。"""

        with self._lock:
            for idx, existing in enumerate(self._messages):
                if existing.id == message.id:
                    self._messages[idx] = message
                    break
            else:
                raise KeyError(message.id)
        self._publish(message)

    def _publish(self, message: Message) -> None:
        snapshot = message.model_copy()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snapshot)
