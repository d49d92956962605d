"""语音合成引擎协议与 pyttsx3 适配器。

引擎负责把文本读出来，并通过回调报告生命周期事件：

- start: 开始朗读。
- boundary: 开始读某个单词，char_index 为该词在文本中的字符偏移。
- end: 朗读结束（自然结束或被 cancel）。
- error: 合成失败。

每个事件带上 speak() 时传入的 utterance_id，播放器据此丢弃过期事件。
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Literal, Optional, Protocol

from somm_core.domain.exceptions import SynthesisError
from somm_core.infrastructure.logging.logger import log_event


SpeechEventKind = Literal["start", "boundary", "end", "error"]


@dataclass
class SpeechEvent:
    kind: SpeechEventKind
    utterance_id: int
    char_index: int = 0
    error: Optional[str] = None


SpeechCallback = Callable[[SpeechEvent], None]


class SpeechEngine(Protocol):
    """语音合成协作方。speak 必须立即返回，事件异步回调。"""

    def speak(
        self,
        text: str,
        utterance_id: int,
        on_event: SpeechCallback,
        voice: Optional[str] = None,
        rate: Optional[int] = None,
    ) -> None:
        ...

    def cancel(self) -> None:
        ...


def select_voice(voices: Iterable[Any], preferred: Optional[str] = None) -> Optional[Any]:
    """挑选固定使用的声音：优先配置的名称，其次英文男声，最后任意英文声音。"""

    voices = list(voices)
    if preferred:
        for voice in voices:
            if preferred.lower() in (getattr(voice, "name", "") or "").lower():
                return voice

    def is_english(voice: Any) -> bool:
        langs = getattr(voice, "languages", None) or []
        tags = [lang.decode("utf-8", "ignore") if isinstance(lang, bytes) else str(lang) for lang in langs]
        name = (getattr(voice, "name", "") or "").lower()
        return any("en" in tag.lower() for tag in tags) or "english" in name

    def is_male(voice: Any) -> bool:
        gender = (getattr(voice, "gender", "") or "").lower()
        name = (getattr(voice, "name", "") or "").lower()
        return gender == "male" or "male" in name.replace("female", "")

    for voice in voices:
        if is_english(voice) and is_male(voice):
            return voice
    for voice in voices:
        if is_english(voice):
            return voice
    return None


class Pyttsx3Engine:
    """基于 pyttsx3 的本地语音合成。

    pyttsx3 的 runAndWait 是阻塞调用，这里用一个常驻工作线程持有引擎实例，
    speak 只负责把任务放进队列。
    """

    def __init__(self, preferred_voice: Optional[str] = None):
        import pyttsx3

        self._pyttsx3 = pyttsx3
        self._preferred_voice = preferred_voice
        self._jobs: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._engine = None
        self._ready = threading.Event()
        self._worker = threading.Thread(target=self._loop, name="somm-tts", daemon=True)
        self._worker.start()
        self._ready.wait(timeout=5.0)

    def speak(
        self,
        text: str,
        utterance_id: int,
        on_event: SpeechCallback,
        voice: Optional[str] = None,
        rate: Optional[int] = None,
    ) -> None:
        if self._engine is None:
            raise SynthesisError(code="TTS_UNAVAILABLE", message="speech engine failed to initialise", http_status=503)
        self._jobs.put((text, utterance_id, on_event, voice, rate))

    def cancel(self) -> None:
        # 清掉尚未开始的任务，再打断正在读的那条
        try:
            while True:
                self._jobs.get_nowait()
        except queue.Empty:
            pass
        if self._engine is not None:
            self._engine.stop()

    def close(self) -> None:
        self.cancel()
        self._jobs.put(None)

    def _loop(self) -> None:
        try:
            self._engine = self._pyttsx3.init()
            voices = self._engine.getProperty("voices") or []
        except Exception as e:
            log_event(logging.ERROR, "pyttsx3 init failed", {}, error=str(e))
            self._engine = None
            self._ready.set()
            return
        self._ready.set()
        locked = select_voice(voices, self._preferred_voice)
        while True:
            job = self._jobs.get()
            if job is None:
                return
            text, utterance_id, on_event, voice, rate = job
            try:
                chosen = select_voice(voices, voice) if voice else locked
                self._run_job(text, utterance_id, on_event, chosen, rate)
            except Exception as e:
                # 单条任务失败后工作线程继续处理队列
                log_event(logging.ERROR, "pyttsx3 job failed", {}, utterance_id=utterance_id, error=str(e))
                on_event(SpeechEvent("error", utterance_id, error=str(e)))

    def _run_job(self, text: str, utterance_id: int, on_event: SpeechCallback, voice: Any, rate: Optional[int]) -> None:
        engine = self._engine
        tokens = []
        try:
            tokens = [
                engine.connect("started-utterance", lambda name: on_event(SpeechEvent("start", utterance_id))),
                engine.connect(
                    "started-word",
                    lambda name, location, length: on_event(SpeechEvent("boundary", utterance_id, char_index=location)),
                ),
                engine.connect(
                    "finished-utterance", lambda name, completed: on_event(SpeechEvent("end", utterance_id))
                ),
                engine.connect(
                    "error",
                    lambda name, exception: on_event(SpeechEvent("error", utterance_id, error=str(exception))),
                ),
            ]
            if voice is not None:
                engine.setProperty("voice", voice.id)
            if rate:
                engine.setProperty("rate", rate)
            engine.say(text, f"u{utterance_id}")
            engine.runAndWait()
        except Exception as e:
            # 驱动可能抛出任意异常（OSError、COM 错误等），一律转成 error 事件
            log_event(logging.ERROR, "pyttsx3 playback failed", {}, utterance_id=utterance_id, error=str(e))
            on_event(SpeechEvent("error", utterance_id, error=str(e)))
        finally:
            for token in tokens:
                engine.disconnect(token)
