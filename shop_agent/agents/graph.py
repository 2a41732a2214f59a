"""LangGraph construction and node implementations for one chat turn.

流程:

    resolve ──► classify ──► respond ──────────────► finish
       │           │ (defer)                            ▲
       │           ▼                                    │
       └──────► discover ──► call_model ⇄ run_tools ────┘

节点通过 StreamWriter 推送客户端事件（stream_mode="custom"），
状态更新全部通过返回值完成。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph
from langgraph.types import StreamWriter

from shop_agent.agents.state import TurnState
from shop_agent.auth.flow import AuthFlowManager
from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore
from shop_agent.domain.exceptions import MissingRequestParameters
from shop_agent.domain.models import (
    ChatMessage,
    ChatRequest,
    ContentBlock,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    content_to_json,
)
from shop_agent.infrastructure.logging.logger import logger
from shop_agent.intents.account import ACCOUNT_INTENTS, AccountStatus, check_customer_account
from shop_agent.intents.engine import DEFER_INTENT, ERROR_TYPE, IntentEngine, merge_context
from shop_agent.prompts import Strategy, build_system_messages
from shop_agent.providers.base import ProviderClient
from shop_agent.tools.definitions import (
    AuthRequiredOutcome,
    ErrorOutcome,
    SuccessOutcome,
    ToolCatalog,
    ToolInvocation,
    ToolOrigin,
    ToolOutcome,
)
from shop_agent.tools.mcp_client import McpClient
from shop_agent.tools.normalizer import SchemaHint, extract_structured, parse_payload

AUTH_PROMPT = "Pour accéder à ces informations, veuillez vous connecter à votre compte client : {url}"
AUTH_PROMPT_NO_LINK = "Pour accéder à ces informations, veuillez vous connecter à votre compte client."
AUTH_REQUIRED_RESULT = "auth_required: customer authorization is needed before calling this tool"
INCOMPLETE_TOOL_RESULT = "tool call not executed: the model stopped with stop_reason={stop_reason}"

# 在账户状态查询后需要用状态文案覆盖模板的状态
STATUS_OVERRIDES = frozenset({"not_found", "not_pro", "pro_pending", "unknown"})


def describe_tool_use(block: ToolUseBlock) -> str:
    args = json.dumps(block.input, ensure_ascii=False)
    return f"Appel de l'outil {block.name} avec les arguments {args}"


def repair_history(history: List[ChatMessage]) -> List[ChatMessage]:
    """修复历史中 tool_use / tool_result 配对不完整的消息。

    - 没有对应 tool_use 的 tool_result 块被丢弃。
    - 之后没有任何 tool_result 回应的 tool_use 块被丢弃。
    丢弃后为空的消息整体移除。
    """

    answered = set()
    for msg in history:
        for b in msg.blocks:
            if isinstance(b, ToolResultBlock):
                answered.add(b.tool_use_id)

    seen_uses = set()
    repaired: List[ChatMessage] = []
    dropped = 0
    for msg in history:
        if isinstance(msg.content, str):
            repaired.append(msg)
            continue
        kept: List[ContentBlock] = []
        for b in msg.content:
            if isinstance(b, ToolUseBlock):
                if b.id not in answered:
                    dropped += 1
                    continue
                seen_uses.add(b.id)
            elif isinstance(b, ToolResultBlock) and b.tool_use_id not in seen_uses:
                dropped += 1
                continue
            kept.append(b)
        if kept:
            repaired.append(ChatMessage(role=msg.role, content=kept, meta=msg.meta))
    if dropped:
        logger.warning("history.repaired", extra={"extra": {"dropped_blocks": dropped}})
    return repaired


class TurnNodes:
    """一轮对话的全部节点；持有本轮用到的协作者。"""

    def __init__(
        self,
        store: ConversationStore,
        provider: ProviderClient,
        engine: IntentEngine,
        auth: AuthFlowManager,
        tools: McpClient,
        shop_id: Optional[str] = None,
        shop_origin: Optional[str] = None,
        cfg=settings,
    ):
        self._store = store
        self._provider = provider
        self._engine = engine
        self._auth = auth
        self._tools = tools
        self._shop_id = shop_id
        self._shop_origin = shop_origin
        self._settings = cfg

    # ---- 持久化（写穿，失败只记日志）----

    def persist(self, conversation_id: str, message: ChatMessage) -> None:
        try:
            self._store.append_message(conversation_id, message.role, content_to_json(message.content))
        except Exception as exc:
            logger.error(
                "persist.failed",
                extra={"extra": {"conversation_id": conversation_id, "role": message.role, "error": str(exc)}},
            )

    def load_history(self, conversation_id: str) -> List[ChatMessage]:
        try:
            records = self._store.load_history(conversation_id)
        except Exception as exc:
            logger.error("history.load_failed", extra={"extra": {"conversation_id": conversation_id, "error": str(exc)}})
            return []
        return repair_history([r.to_chat_message() for r in records])

    # ---- 节点 ----

    async def resolve(self, state: TurnState, writer: StreamWriter) -> Dict[str, Any]:
        cid = state["conversation_id"]
        writer(StreamEvent("id", {"conversation_id": cid}))
        user = ChatMessage(role="user", content=state["user_message"])
        history = self.load_history(cid)
        self.persist(cid, user)
        logger.info(
            "resolve.done",
            extra={"extra": {"conversation_id": cid, "strategy": state["strategy"].value, "history": len(history)}},
        )
        return {
            "history": history + [user],
            "products": [],
            "embedded_urls": [],
            "model_calls": 0,
            "stop_reason": None,
            "pending_tools": [],
        }

    async def classify(self, state: TurnState) -> Dict[str, Any]:
        intent = self._engine.classify(state["user_message"])
        logger.info("classify.done", extra={"extra": {"conversation_id": state["conversation_id"], "intent": intent}})
        return {"intent": intent}

    async def respond(self, state: TurnState, writer: StreamWriter) -> Dict[str, Any]:
        intent = state["intent"] or ""
        context = dict(state.get("context") or {})
        status = self._account_status(intent, context)
        if status is not None:
            context = merge_context(context, status.as_context())

        response = self._engine.respond(intent, context)
        text = response.text
        if status is not None and status.status in STATUS_OVERRIDES:
            text = status.message

        writer(StreamEvent("vadf_response", {"text": text, "intent": intent, "response_type": response.type}))

        escalate = (
            self._engine.should_escalate(intent)
            or (status is not None and status.escalade)
            or response.type == ERROR_TYPE
        )
        if escalate:
            contact = (status.contact if status is not None else None) or self._engine.support_contact
            writer(StreamEvent("escalade", {"contact": contact, "message": text}))

        reply = ChatMessage(role="assistant", content=text)
        self.persist(state["conversation_id"], reply)
        logger.info(
            "respond.done",
            extra={"extra": {"intent": intent, "response_type": response.type, "escalade": escalate}},
        )
        return {"history": state["history"] + [reply], "stop_reason": "end_turn"}

    async def discover(self, state: TurnState) -> Dict[str, Any]:
        catalog = await self._tools.discover_all()
        return {"catalog": catalog}

    async def call_model(self, state: TurnState, writer: StreamWriter) -> Dict[str, Any]:
        catalog = state.get("catalog") or ToolCatalog()
        req = ChatRequest(
            model=self._settings.default_model,
            messages=state["history"],
            system=build_system_messages(state.get("prompt_type"), state.get("current_page_url")),
            tools=list(catalog.tools) or None,
            max_tokens=self._settings.max_tokens,
        )
        calls = state.get("model_calls", 0) + 1
        logger.info("call_model.start", extra={"extra": {"call": calls, "messages": len(req.messages), "tools": len(catalog)}})

        message: Optional[ChatMessage] = None
        stop_reason: Optional[str] = None
        async for ev in self._provider.stream(req):
            if ev.kind == "block_start" and ev.block_type == "text":
                writer(StreamEvent("new_message"))
            elif ev.kind == "text" and ev.text:
                writer(StreamEvent("chunk", {"chunk": ev.text}))
            elif ev.kind == "block_stop":
                writer(StreamEvent("content_block_complete"))
            elif ev.kind == "message":
                message = ev.message
                stop_reason = ev.stop_reason

        history = list(state["history"])
        pending: List[ToolUseBlock] = []
        if message is not None:
            history.append(message)
            self.persist(state["conversation_id"], message)
            writer(StreamEvent("message_complete"))
            pending = message.tool_uses
        logger.info("call_model.end", extra={"extra": {"call": calls, "stop_reason": stop_reason, "tool_uses": len(pending)}})
        return {
            "history": history,
            "stop_reason": stop_reason or "end_turn",
            "pending_tools": pending,
            "model_calls": calls,
        }

    async def run_tools(self, state: TurnState, writer: StreamWriter) -> Dict[str, Any]:
        cid = state["conversation_id"]
        catalog = state.get("catalog") or ToolCatalog()
        products = list(state.get("products") or [])
        embedded_urls = list(state.get("embedded_urls") or [])
        results: List[ContentBlock] = []
        pending = list(state.get("pending_tools") or [])
        auth_blocked = False

        stop = state.get("stop_reason")
        if stop != "tool_use":
            # 非 tool_use 结束（如 max_tokens）时参数可能被截断，不执行，只回填错误结果保持配对
            logger.warning(
                "run_tools.incomplete",
                extra={"extra": {"conversation_id": cid, "stop_reason": stop, "tool_uses": len(pending)}},
            )
            results.extend(
                ToolResultBlock(tool_use_id=b.id, content=INCOMPLETE_TOOL_RESULT.format(stop_reason=stop), is_error=True)
                for b in pending
            )
            pending = []

        for index, block in enumerate(pending):
            writer(StreamEvent("tool_use", {"tool_use_message": describe_tool_use(block)}))
            origin = catalog.origin_of(block.name) or ToolOrigin.STOREFRONT

            token = None
            if origin is ToolOrigin.CUSTOMER:
                token = self._auth.access_token(cid)
                if token is None:
                    logger.info("run_tools.no_token", extra={"extra": {"conversation_id": cid, "tool_name": block.name}})
                    results.extend(self._auth_results(pending[index:]))
                    auth_blocked = True
                    break

            outcome = await self._tools.invoke(
                ToolInvocation(id=block.id, name=block.name, arguments=block.input),
                origin=origin,
                auth_token=token,
            )
            if isinstance(outcome, AuthRequiredOutcome):
                logger.info("run_tools.auth_required", extra={"extra": {"conversation_id": cid, "tool_name": block.name}})
                results.extend(self._auth_results(pending[index:]))
                auth_blocked = True
                break

            results.append(self._result_block(block, outcome))
            if isinstance(outcome, SuccessOutcome):
                found, url = self._collect(block.name, outcome)
                products.extend(found)
                if url:
                    embedded_urls.append(url)

        history = list(state["history"])
        if results:
            tool_message = ChatMessage(role="user", content=results)
            history.append(tool_message)
            self.persist(cid, tool_message)

        update: Dict[str, Any] = {
            "history": history,
            "pending_tools": [],
            "products": products,
            "embedded_urls": embedded_urls,
        }
        if auth_blocked:
            update.update(self._auth_short_circuit(cid, history, writer))
        return update

    async def finish(self, state: TurnState, writer: StreamWriter) -> Dict[str, Any]:
        products = state.get("products") or []
        embedded_urls = state.get("embedded_urls") or []
        if products or embedded_urls:
            payload: Dict[str, Any] = {"products": products}
            if embedded_urls:
                payload["embedded_urls"] = embedded_urls
            writer(StreamEvent("product_results", payload))
        writer(StreamEvent("end_turn"))
        logger.info(
            "finish",
            extra={"extra": {"conversation_id": state["conversation_id"], "stop_reason": state.get("stop_reason")}},
        )
        return {}

    # ---- 路由 ----

    def route_strategy(self, state: TurnState) -> str:
        return "classify" if state["strategy"] is Strategy.DETERMINISTIC else "discover"

    def route_intent(self, state: TurnState) -> str:
        return "discover" if state.get("intent") == DEFER_INTENT else "respond"

    def route_model(self, state: TurnState) -> str:
        stop = state.get("stop_reason")
        if stop in ("end_turn", "auth_required"):
            return "finish"
        if state.get("pending_tools"):
            return "run_tools"
        return self._again_or_finish(state)

    def route_tools(self, state: TurnState) -> str:
        if state.get("stop_reason") == "auth_required":
            return "finish"
        return self._again_or_finish(state)

    def _again_or_finish(self, state: TurnState) -> str:
        if state.get("model_calls", 0) >= self._settings.max_model_calls:
            logger.warning(
                "model_calls.limit_reached",
                extra={"extra": {"conversation_id": state["conversation_id"], "limit": self._settings.max_model_calls}},
            )
            return "finish"
        return "call_model"

    # ---- 辅助 ----

    def _account_status(self, intent: str, context: Dict[str, Any]) -> Optional[AccountStatus]:
        if intent not in ACCOUNT_INTENTS:
            return None
        email = context.get("email")
        account_name = context.get("account_name")
        if not email and not account_name:
            return None
        try:
            return check_customer_account(self._store, email=email, account_name=account_name)
        except Exception as exc:
            logger.error("account.lookup_failed", extra={"extra": {"intent": intent, "error": str(exc)}})
            return None

    def _auth_results(self, blocks: List[ToolUseBlock]) -> List[ContentBlock]:
        return [ToolResultBlock(tool_use_id=b.id, content=AUTH_REQUIRED_RESULT, is_error=True) for b in blocks]

    def _auth_short_circuit(self, cid: str, history: List[ChatMessage], writer: StreamWriter) -> Dict[str, Any]:
        url = self._authorization_url(cid)
        text = AUTH_PROMPT.format(url=url) if url else AUTH_PROMPT_NO_LINK
        reply = ChatMessage(role="assistant", content=[TextBlock(text=text)])
        writer(StreamEvent("new_message"))
        writer(StreamEvent("chunk", {"chunk": text}))
        writer(StreamEvent("message_complete"))
        self.persist(cid, reply)
        writer(StreamEvent("auth_required", {"auth_url": url}))
        return {"history": history + [reply], "stop_reason": "auth_required"}

    def _authorization_url(self, cid: str) -> Optional[str]:
        shop_id = self._shop_id
        if not shop_id and self._shop_origin:
            shop_id = urlparse(self._shop_origin).hostname
        try:
            return self._auth.build_authorization_url(cid, shop_id)
        except MissingRequestParameters as exc:
            logger.warning("auth.url_unavailable", extra={"extra": {"conversation_id": cid, "error": exc.message}})
            return None

    def _result_block(self, block: ToolUseBlock, outcome: ToolOutcome) -> ToolResultBlock:
        if isinstance(outcome, SuccessOutcome):
            return ToolResultBlock(tool_use_id=block.id, content=outcome.content)
        detail = outcome.detail if isinstance(outcome, ErrorOutcome) else None
        if detail is None:
            detail = f"Tool {block.name} failed"
        elif not isinstance(detail, str):
            detail = json.dumps(detail, ensure_ascii=False, default=str)
        logger.info("run_tools.error", extra={"extra": {"tool_name": block.name, "detail": detail}})
        return ToolResultBlock(tool_use_id=block.id, content=detail, is_error=True)

    def _collect(self, tool_name: str, outcome: SuccessOutcome) -> Tuple[List[Dict[str, str]], Optional[str]]:
        if tool_name == self._settings.product_search_tool:
            found = extract_structured(outcome, SchemaHint.PRODUCT_SEARCH, self._settings.max_products_to_display)
            return list(found), None
        if tool_name == self._settings.product_details_tool:
            product = parse_payload(outcome).get("product")
            if isinstance(product, dict) and product.get("embedded_url"):
                return [], str(product["embedded_url"])
        return [], None


def build_graph(nodes: TurnNodes) -> CompiledStateGraph:
    graph = StateGraph(TurnState)
    graph.add_node("resolve", nodes.resolve)
    graph.add_node("classify", nodes.classify)
    graph.add_node("respond", nodes.respond)
    graph.add_node("discover", nodes.discover)
    graph.add_node("call_model", nodes.call_model)
    graph.add_node("run_tools", nodes.run_tools)
    graph.add_node("finish", nodes.finish)
    graph.set_entry_point("resolve")
    graph.add_conditional_edges("resolve", nodes.route_strategy, {"classify": "classify", "discover": "discover"})
    graph.add_conditional_edges("classify", nodes.route_intent, {"respond": "respond", "discover": "discover"})
    graph.add_edge("respond", "finish")
    graph.add_edge("discover", "call_model")
    graph.add_conditional_edges(
        "call_model",
        nodes.route_model,
        {"finish": "finish", "run_tools": "run_tools", "call_model": "call_model"},
    )
    graph.add_conditional_edges("run_tools", nodes.route_tools, {"finish": "finish", "call_model": "call_model"})
    graph.add_edge("finish", END)
    return graph.compile()


def recursion_limit(cfg=settings) -> int:
    """图的最大步数：每次模型调用最多伴随一次工具执行，外加固定节点。"""

    return 2 * cfg.max_model_calls + 8
