"""对外 API 服务模块。

在进程启动时一次性组装所有协作者（存储、意图引擎、授权流程、模型 Provider、编排器），
并提供 HTTP 层使用的简化函数接口。
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shop_agent.agents.orchestrator import ConversationLocks, ConversationOrchestrator
from shop_agent.auth.flow import AuthFlowManager
from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore
from shop_agent.infrastructure.logging.logger import logger
from shop_agent.infrastructure.storage.json_store import JsonConversationStore
from shop_agent.intents.engine import IntentEngine
from shop_agent.providers import create_provider
from shop_agent.providers.base import ProviderClient


@dataclass
class ChatServices:
    store: ConversationStore
    engine: IntentEngine
    auth: AuthFlowManager
    provider: ProviderClient
    orchestrator: ConversationOrchestrator


_services: Optional[ChatServices] = None


def build_services(
    cfg=settings,
    store: Optional[ConversationStore] = None,
    provider: Optional[ProviderClient] = None,
    engine: Optional[IntentEngine] = None,
) -> ChatServices:
    """组装服务。规则集加载失败（RuleSetLoadFailure）直接抛出，进程不应带着残缺规则启动。"""

    store = store or JsonConversationStore(root=cfg.storage_root)
    engine = engine or IntentEngine.from_file(cfg.rules_file)
    provider = provider or create_provider()
    auth = AuthFlowManager(store, cfg=cfg)
    orchestrator = ConversationOrchestrator(
        store=store,
        provider=provider,
        engine=engine,
        auth=auth,
        locks=ConversationLocks(),
        cfg=cfg,
    )
    logger.info(
        "services.ready",
        extra={"extra": {"storage_root": cfg.storage_root, "intents": len(engine.rules.intents)}},
    )
    return ChatServices(store=store, engine=engine, auth=auth, provider=provider, orchestrator=orchestrator)


def get_services() -> ChatServices:
    """获取默认服务实例（单例）。"""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def get_conversation_messages(services: ChatServices, conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息，content 中的内容块已解析为 JSON 结构。

    Args:
        services: 已组装的服务
        conversation_id: 会话ID

    Returns:
        消息列表
    """
    records = services.store.load_history(conversation_id)
    return [
        {
            "id": r.id,
            "role": r.role,
            "content": r.to_chat_message().to_payload()["content"],
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]
