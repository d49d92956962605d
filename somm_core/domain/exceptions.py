"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

Provider 失败分为四类（调用方据此渲染不同提示）：

- AuthError: 凭证无效。
- RateLimitError: 被限流。
- ModelUnavailableError: 模型不存在/不可用（备用模型也失败后才会抛给调用方）。
- UnknownError: 其他一切失败（网络、超时、非预期 HTTP 状态）。

取消不是错误：被取消的一轮对话以 TurnState.CANCELLED 结束，不抛异常。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息，Provider 错误时为厂商返回的原始信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class AuthError(BusinessError):
    """凭证缺失或被 Provider 拒绝（401/403）。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，不做静默重试，由调用方决定何时重发。"""


class ModelUnavailableError(BusinessError):
    """模型不存在或暂不可用（404/503/model_not_found）。

    这是唯一会触发主模型 → 备用模型替换的错误类型。
    """


class UnknownError(BusinessError):
    """无法归入以上类别的 Provider 失败。"""


class NetworkError(UnknownError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(UnknownError):
    """第三方 API 返回其他非 2xx 状态时抛出。"""


class SynthesisError(BusinessError):
    """语音合成引擎报告的失败。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class TurnInProgressError(BusinessError):
    """已有一轮对话在进行中，新的提交被拒绝（不排队）。"""


class Cancelled(Exception):
    """取消信号在单次调用路径上的控制流表示。

    刻意不继承 BusinessError：TurnController 捕获后以 CANCELLED 状态结束本轮，
    不会作为失败上报。
    """
