"""Provider 抽象接口。

编排器不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商实现一个 ProviderClient。
- 负责：将 ChatRequest 转成具体 API 请求，并把流式响应解析为 ModelStreamEvent。
"""

from typing import AsyncIterator, Protocol

from shop_agent.domain.models import ChatRequest, ModelStreamEvent


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - stream(req): 执行一次流式调用，按到达顺序产出增量，
      最后一个事件的 kind 为 "message"，携带完整消息与 stop_reason。
    """

    name: str

    def stream(self, req: ChatRequest) -> AsyncIterator[ModelStreamEvent]:
        ...
