"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层做统一捕获与用户提示。

恢复策略：
- DiscoveryFailure / MalformedToolPayload：本地降级，不中断对话。
- 工具的"一般失败"与"需要授权"不以异常抛出，而是作为 ErrorOutcome / AuthRequiredOutcome
  值返回（见 tools/definitions.py）：前者作为 tool_result 回填给模型，后者终止本轮。
- MissingRequestParameters：客户端错误，处理前直接拒绝。
- RuleSetLoadFailure：启动即失败，规则引擎不得带着残缺规则运行。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、tool_name 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class MissingRequestParameters(ValidationError):
    """请求缺少必填参数（message、conversation_id、shop_id 等）。"""


class DiscoveryFailure(BusinessError):
    """工具服务器发现失败（网络/协议错误），调用方降级为空工具集。"""


class MalformedToolPayload(BusinessError):
    """工具返回的内容不是合法 JSON 或结构不符合预期。"""


class RuleSetLoadFailure(BusinessError):
    """意图规则集加载失败。"""


class UnhandledOrchestratorFailure(BusinessError):
    """对话循环中未被处理的异常，向调用方传播。"""
