"""Shop Agent 顶层包。

该包提供店铺聊天助手的核心实现，
包括配置加载、领域模型、Provider 适配、工具服务器客户端、
确定性意图引擎、客户授权流程、对话编排与 SSE 流式输出等能力。
"""

from shop_agent.agents.orchestrator import ConversationOrchestrator, TurnRequest

__all__ = ["ConversationOrchestrator", "TurnRequest"]
