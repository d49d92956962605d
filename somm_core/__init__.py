"""somm_core 顶层包。

酒庄 sommelier 助手的对话核心：上下文组装、带备用模型的流式补全、
可取消的对话轮次，以及支持静音后原位继续的语音播放。
"""

from somm_core.api.service import ChatService, get_default_service

__all__ = ["ChatService", "get_default_service"]
