"""Speech Player：带“静音后从原位置继续”的朗读状态机。

状态::

    idle → speaking → (muted → speaking) | idle

播放器由应用根对象创建一个实例，通过依赖注入共享，保证同一时间只有一段
语音在读：speak() 总是先取消上一段。每个引擎回调只对应一次状态迁移；
非法调用（例如 idle 时 mute）返回 False 并记录日志，不修改状态。
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from somm_core.config.settings import settings
from somm_core.domain.exceptions import SynthesisError
from somm_core.infrastructure.logging.logger import log_event
from somm_core.voice.engine import SpeechEngine, SpeechEvent
from somm_core.voice.text import strip_emphasis


class PlayerState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    MUTED = "muted"


@dataclass
class SpeechSession:
    """进程内唯一的朗读会话状态，不持久化。

    was_muted 为 True 时 paused_remainder 一定是某段已读文本的非空后缀。
    """

    last_played_text: str = ""
    current_position: int = 0
    paused_remainder: str = ""
    is_playing: bool = False
    was_muted: bool = False


class SpeechPlayer:
    def __init__(
        self,
        engine: SpeechEngine,
        voice: Optional[str] = None,
        rate: Optional[int] = None,
        on_error: Optional[Callable[[SynthesisError], None]] = None,
    ):
        self._engine = engine
        self._voice = voice if voice is not None else settings.speech_voice
        self._rate = rate if rate is not None else settings.speech_rate
        self._on_error = on_error
        self._lock = threading.RLock()
        self._utterance_id = 0
        self.state = PlayerState.IDLE
        self.session = SpeechSession()

    def speak(self, text: str) -> bool:
        """开始朗读新文本；空文本（含只有标记的文本）不做任何事并返回 False。"""

        cleaned = strip_emphasis(text or "")
        if not cleaned.strip():
            return False
        return self._start(cleaned)

    def mute(self) -> bool:
        with self._lock:
            if self.state is not PlayerState.SPEAKING:
                self._reject("mute")
                return False
            session = self.session
            remainder = session.last_played_text[session.current_position:]
            if not remainder.strip():
                # 已经读到结尾，没有可恢复的内容
                self._halt()
                self._reset()
                log_event(logging.INFO, "Speech muted at end; stopped", self._ctx())
                return True
            self._halt()
            session.paused_remainder = remainder
            session.was_muted = True
            session.is_playing = False
            self.state = PlayerState.MUTED
            log_event(logging.INFO, "Speech muted", self._ctx(), position=session.current_position, remaining=len(remainder))
            return True

    def resume(self) -> bool:
        """从静音位置继续；新语音的位置从 0 开始，相对于剩余文本计算。"""

        with self._lock:
            remainder = self.session.paused_remainder
            if self.state is not PlayerState.MUTED or not remainder:
                self._reject("resume")
                return False
            self.session.paused_remainder = ""
            self.session.was_muted = False
            return self._start(remainder)

    def stop(self) -> None:
        with self._lock:
            if self.state is PlayerState.SPEAKING:
                self._halt()
            else:
                self._utterance_id += 1
            self._reset()

    def handle_event(self, event: SpeechEvent) -> None:
        """引擎回调入口；过期语音（已被取消或替换）的事件直接丢弃。"""

        error: Optional[SynthesisError] = None
        with self._lock:
            if event.utterance_id != self._utterance_id or self.state is not PlayerState.SPEAKING:
                return
            if event.kind == "start":
                self.session.is_playing = True
            elif event.kind == "boundary":
                limit = len(self.session.last_played_text)
                position = min(max(event.char_index, 0), limit)
                if position > self.session.current_position:
                    self.session.current_position = position
            elif event.kind == "end":
                self._reset()
                log_event(logging.INFO, "Speech finished", self._ctx())
            elif event.kind == "error":
                self._utterance_id += 1
                self._reset()
                error = SynthesisError(code="SYNTHESIS_ERROR", message=event.error or "speech synthesis failed", http_status=500)
                log_event(logging.ERROR, "Speech synthesis failed", self._ctx(), error=error.message)
        if error is not None and self._on_error is not None:
            self._on_error(error)

    def _start(self, text: str) -> bool:
        error: Optional[SynthesisError] = None
        with self._lock:
            if self.state is PlayerState.SPEAKING:
                self._halt()
            self._utterance_id += 1
            utterance_id = self._utterance_id
            self.session = SpeechSession(last_played_text=text, is_playing=True)
            self.state = PlayerState.SPEAKING
            log_event(logging.INFO, "Speech started", self._ctx(), chars=len(text))
            try:
                self._engine.speak(text, utterance_id, self.handle_event, voice=self._voice, rate=self._rate)
            except SynthesisError as e:
                if self._utterance_id == utterance_id:
                    self._utterance_id += 1
                    self._reset()
                error = e
                log_event(logging.ERROR, "Speech synthesis failed", self._ctx(), error=e.message, code=e.code)
        if error is not None:
            if self._on_error is not None:
                self._on_error(error)
            return False
        return True

    def _halt(self) -> None:
        # 先作废当前 utterance，再让引擎停止，取消引发的 end 事件会被忽略
        self._utterance_id += 1
        self._engine.cancel()

    def _reset(self) -> None:
        self.session.paused_remainder = ""
        self.session.current_position = 0
        self.session.is_playing = False
        self.session.was_muted = False
        self.state = PlayerState.IDLE

    def _reject(self, operation: str) -> None:
        log_event(logging.WARNING, "Rejected speech transition", self._ctx(), operation=operation)

    def _ctx(self) -> dict:
        return {"utterance_id": self._utterance_id, "state": self.state.value}
