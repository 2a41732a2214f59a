"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体实现 (claude_client)。
"""

from typing import Optional

from shop_agent.config.settings import settings
from shop_agent.providers.base import ProviderClient
from shop_agent.providers.claude_client import ClaudeClient


def create_provider(name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例。"""

    provider_name = (name or "claude").lower()
    if provider_name == "claude":
        return ClaudeClient(settings)
    raise KeyError(f"Unknown provider: {provider_name!r}")
