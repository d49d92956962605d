"""Provider 抽象接口。

对话管线不直接依赖具体厂商的 HTTP SDK，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAICompatClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。
- 负责：把 HTTP 状态映射到 domain.exceptions 中的失败分类。
"""

from typing import Iterable, Optional, Protocol

from somm_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk
from somm_core.domain.signals import AbortSignal


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat(req, abort): 执行一次非流式对话调用，返回统一的 ChatResult。
    - chat_stream(req, abort): 执行一次流式对话调用，逐步产出增量。
      abort 被触发后，序列应正常结束而不是抛错。
    """

    name: str

    def chat(self, req: ChatRequest, abort: Optional[AbortSignal] = None) -> ChatResult:
        ...

    def chat_stream(
        self, req: ChatRequest, abort: Optional[AbortSignal] = None
    ) -> Iterable[ChatStreamChunk]:
        ...
