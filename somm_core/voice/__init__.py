"""语音播放。

- text: 朗读前的文本处理（去除强调标记、表情转单词）。
- engine: SpeechEngine 协议与 pyttsx3 适配器。
- player: SpeechPlayer 静音/恢复状态机。
"""

from somm_core.voice.engine import SpeechEngine, SpeechEvent
from somm_core.voice.player import PlayerState, SpeechPlayer, SpeechSession
from somm_core.voice.text import speakable_text, strip_emphasis

__all__ = [
    "PlayerState",
    "SpeechEngine",
    "SpeechEvent",
    "SpeechPlayer",
    "SpeechSession",
    "speakable_text",
    "strip_emphasis",
]
