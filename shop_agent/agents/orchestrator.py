"""对话编排器：一次请求 = 一轮对话。

run_turn 是一个异步生成器，按顺序产出 StreamEvent：
第一个事件总是 id，成功结束时最后一个事件总是 end_turn。

- 同一 conversation_id 的轮次通过 ConversationLocks 串行执行。
- 调用方关闭生成器（客户端断开）时，正在进行的模型流 / 工具调用随之取消。
- BusinessError 原样向上传播；其他未预期异常包装为 UnhandledOrchestratorFailure。
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import uuid4

from shop_agent.agents.graph import TurnNodes, build_graph, recursion_limit
from shop_agent.agents.state import TurnState
from shop_agent.auth.flow import CONVERSATION_ID_PATTERN, AuthFlowManager
from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore
from shop_agent.domain.exceptions import (
    BusinessError,
    MissingRequestParameters,
    UnhandledOrchestratorFailure,
    ValidationError,
)
from shop_agent.domain.models import StreamEvent
from shop_agent.infrastructure.logging.logger import logger
from shop_agent.intents.engine import IntentEngine
from shop_agent.prompts import resolve_strategy
from shop_agent.providers.base import ProviderClient
from shop_agent.tools.mcp_client import McpClient

ToolClientFactory = Callable[[str, Optional[str]], McpClient]


@dataclass
class TurnRequest:
    """一轮对话的输入（HTTP 层解析请求体与请求头后构造）。"""

    message: Optional[str]
    conversation_id: Optional[str] = None
    prompt_type: Optional[str] = None
    shop_origin: Optional[str] = None
    shop_id: Optional[str] = None
    current_page_url: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


def new_conversation_id() -> str:
    return uuid4().hex


def validate_request(request: TurnRequest) -> TurnRequest:
    """在任何处理之前校验请求；缺少 message 时抛出 MissingRequestParameters。"""

    if not request.message or not request.message.strip():
        raise MissingRequestParameters(code="MISSING_MESSAGE", message="Missing message")
    if request.conversation_id and not CONVERSATION_ID_PATTERN.match(request.conversation_id):
        raise ValidationError(
            code="INVALID_CONVERSATION_ID",
            message="conversation_id may only contain letters, digits, '_' and '.'",
        )
    return request


class ConversationLocks:
    """按 conversation_id 分配的 asyncio.Lock，保证同一会话的轮次串行。"""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if not self._users[conversation_id]:
                del self._users[conversation_id]
                self._locks.pop(conversation_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class ConversationOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        provider: ProviderClient,
        engine: IntentEngine,
        auth: AuthFlowManager,
        locks: Optional[ConversationLocks] = None,
        tool_client_factory: Optional[ToolClientFactory] = None,
        cfg=settings,
    ):
        self._store = store
        self._provider = provider
        self._engine = engine
        self._auth = auth
        self._locks = locks or ConversationLocks()
        self._tool_client_factory = tool_client_factory or self._default_tool_client
        self._settings = cfg

    def _default_tool_client(self, conversation_id: str, shop_origin: Optional[str]) -> McpClient:
        return McpClient(self._store, conversation_id, shop_origin, cfg=self._settings)

    async def run_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        validate_request(request)
        cid = request.conversation_id or new_conversation_id()
        prompt_type = request.prompt_type or self._settings.default_prompt_type

        nodes = TurnNodes(
            store=self._store,
            provider=self._provider,
            engine=self._engine,
            auth=self._auth,
            tools=self._tool_client_factory(cid, request.shop_origin),
            shop_id=request.shop_id,
            shop_origin=request.shop_origin,
            cfg=self._settings,
        )
        graph = build_graph(nodes)
        state: TurnState = {
            "conversation_id": cid,
            "user_message": request.message or "",
            "prompt_type": prompt_type,
            "strategy": resolve_strategy(prompt_type),
            "context": dict(request.context or {}),
            "current_page_url": request.current_page_url,
        }

        async with self._locks.hold(cid):
            logger.info("turn.start", extra={"extra": {"conversation_id": cid, "prompt_type": prompt_type}})
            try:
                async with aclosing(
                    graph.astream(
                        state,
                        config={"recursion_limit": recursion_limit(self._settings)},
                        stream_mode="custom",
                    )
                ) as events:
                    async for event in events:
                        yield event
            except BusinessError as e:
                logger.error(
                    "turn.failed",
                    extra={"extra": {"conversation_id": cid, "code": e.code, "error": e.message}},
                )
                raise
            except Exception as exc:
                logger.exception("turn.unhandled", extra={"extra": {"conversation_id": cid}})
                raise UnhandledOrchestratorFailure(
                    code="UNHANDLED_ERROR",
                    message=str(exc) or type(exc).__name__,
                    http_status=500,
                    conversation_id=cid,
                ) from exc
            logger.info("turn.end", extra={"extra": {"conversation_id": cid}})
