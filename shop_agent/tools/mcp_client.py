"""工具服务器（MCP）客户端。

本模块负责：

1. 解析工具服务器端点：店铺公开端点固定为 <shop>/api/mcp；
   客户账户端点先查存储缓存，未命中时请求 <shop>/.well-known/customer-account-api
   取 mcp_api 字段并按会话缓存。
2. 通过 JSON-RPC 2.0 的 tools/list 发现工具，tools/call 调用工具。
3. 发现失败（网络/协议错误）只记录日志并返回空工具集，不让整个请求失败。
4. 调用结果交给 normalizer.classify 分类，"需要授权"与一般失败严格区分。
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore
from shop_agent.domain.exceptions import BusinessError, DiscoveryFailure
from shop_agent.infrastructure.logging.logger import log_event
from shop_agent.tools.definitions import (
    RawToolResponse,
    ToolCatalog,
    ToolDescriptor,
    ToolInvocation,
    ToolOrigin,
    ToolOutcome,
)
from shop_agent.tools.normalizer import classify


WELL_KNOWN_PATH = "/.well-known/customer-account-api"
STOREFRONT_PATH = "/api/mcp"


class McpClient:
    """单个会话范围内的工具服务器客户端。"""

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str,
        shop_origin: Optional[str],
        cfg=settings,
    ):
        self._store = store
        self._conversation_id = conversation_id
        self._shop_origin = shop_origin.rstrip("/") if shop_origin else None
        self._settings = cfg
        self._ids = itertools.count(1)
        self._customer_endpoint: Optional[str] = None

    @property
    def storefront_endpoint(self) -> Optional[str]:
        if not self._shop_origin:
            return None
        return f"{self._shop_origin}{STOREFRONT_PATH}"

    async def resolve_customer_endpoint(self) -> Optional[str]:
        """返回客户账户 MCP 端点；无法解析时抛出 DiscoveryFailure。"""

        if self._customer_endpoint:
            return self._customer_endpoint
        try:
            cached = self._store.get_cached_endpoint(self._conversation_id)
        except BusinessError as e:
            log_event(logging.WARNING, "Endpoint cache read failed", conversation_id=self._conversation_id, error=e.message)
            cached = None
        if cached:
            self._customer_endpoint = cached
            return cached
        if not self._shop_origin:
            raise DiscoveryFailure(code="NO_SHOP_ORIGIN", message="Shop origin unknown; cannot resolve customer endpoint")

        url = f"{self._shop_origin}{WELL_KNOWN_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self._settings.mcp_timeout, trust_env=False) as client:
                resp = await client.get(url, headers={"Accept": "application/json"})
        except httpx.RequestError as e:
            raise DiscoveryFailure(code="NETWORK_ERROR", message=str(e), url=url)
        if resp.status_code >= 400:
            raise DiscoveryFailure(code="DISCOVERY_HTTP_ERROR", message=resp.text, http_status=resp.status_code, url=url)
        try:
            endpoint = resp.json().get("mcp_api")
        except (ValueError, AttributeError) as e:
            raise DiscoveryFailure(code="DISCOVERY_BAD_DOCUMENT", message=str(e), url=url)
        if not endpoint:
            raise DiscoveryFailure(code="DISCOVERY_BAD_DOCUMENT", message="mcp_api missing", url=url)

        try:
            self._store.cache_endpoint(self._conversation_id, endpoint)
        except BusinessError as e:
            log_event(logging.WARNING, "Endpoint cache write failed", conversation_id=self._conversation_id, error=e.message)
        self._customer_endpoint = endpoint
        return endpoint

    async def endpoint_for(self, origin: ToolOrigin) -> Optional[str]:
        if origin is ToolOrigin.CUSTOMER:
            return await self.resolve_customer_endpoint()
        return self.storefront_endpoint

    async def list_tools(self, origin: ToolOrigin) -> List[ToolDescriptor]:
        """tools/list；任何失败都以 DiscoveryFailure 抛出。"""

        endpoint = await self.endpoint_for(origin)
        if not endpoint:
            raise DiscoveryFailure(code="NO_SHOP_ORIGIN", message="Shop origin unknown")
        raw = await self._rpc(endpoint, "tools/list", {})
        if raw.transport_error:
            raise DiscoveryFailure(code="NETWORK_ERROR", message=raw.transport_error, url=endpoint)
        body = raw.body or {}
        if raw.status_code >= 400 or "error" in body:
            raise DiscoveryFailure(
                code="DISCOVERY_RPC_ERROR",
                message=str(body.get("error") or f"HTTP {raw.status_code}"),
                url=endpoint,
            )
        tools = (body.get("result") or {}).get("tools")
        if not isinstance(tools, list):
            raise DiscoveryFailure(code="DISCOVERY_BAD_RESULT", message="result.tools is not a list", url=endpoint)
        return [
            ToolDescriptor(
                name=t["name"],
                description=t.get("description") or "",
                input_schema=t.get("inputSchema") or t.get("input_schema") or {},
                origin=origin,
            )
            for t in tools
            if isinstance(t, dict) and t.get("name")
        ]

    async def discover(self, origin: ToolOrigin) -> List[ToolDescriptor]:
        """发现某个服务器的工具；失败时降级为空列表。"""

        try:
            tools = await self.list_tools(origin)
        except DiscoveryFailure as e:
            log_event(
                logging.WARNING,
                "Tool discovery failed, continuing without tools",
                conversation_id=self._conversation_id,
                origin=origin.value,
                code=e.code,
                error=e.message,
            )
            return []
        log_event(
            logging.INFO,
            "Discovered tools",
            conversation_id=self._conversation_id,
            origin=origin.value,
            tool_names=[t.name for t in tools],
        )
        return tools

    async def discover_all(self) -> ToolCatalog:
        catalog = ToolCatalog()
        catalog.extend(await self.discover(ToolOrigin.STOREFRONT))
        catalog.extend(await self.discover(ToolOrigin.CUSTOMER))
        return catalog

    async def invoke(
        self,
        invocation: ToolInvocation,
        origin: ToolOrigin = ToolOrigin.STOREFRONT,
        auth_token: Optional[str] = None,
    ) -> ToolOutcome:
        try:
            endpoint = await self.endpoint_for(origin)
        except DiscoveryFailure as e:
            endpoint = None
            log_event(logging.WARNING, "Endpoint resolution failed", tool_name=invocation.name, error=e.message)
        if not endpoint:
            return classify(RawToolResponse(status_code=0, transport_error=f"No endpoint for tool {invocation.name}"))
        headers: Dict[str, str] = {}
        if origin is ToolOrigin.CUSTOMER and auth_token:
            headers["Authorization"] = auth_token
        raw = await self._rpc(
            endpoint,
            "tools/call",
            {"name": invocation.name, "arguments": invocation.arguments},
            headers,
        )
        outcome = classify(raw)
        log_event(
            logging.INFO,
            "Tool invoked",
            conversation_id=self._conversation_id,
            tool_name=invocation.name,
            tool_use_id=invocation.id,
            outcome=type(outcome).__name__,
        )
        return outcome

    async def _rpc(
        self,
        endpoint: str,
        method: str,
        params: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> RawToolResponse:
        payload = {"jsonrpc": "2.0", "method": method, "id": next(self._ids), "params": params}
        try:
            async with httpx.AsyncClient(timeout=self._settings.mcp_timeout, trust_env=False) as client:
                resp = await client.post(
                    endpoint,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                        **(headers or {}),
                    },
                )
        except httpx.RequestError as e:
            return RawToolResponse(status_code=0, transport_error=str(e) or type(e).__name__)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if body is not None and not isinstance(body, dict):
            body = None
        if body is None and resp.status_code < 400:
            return RawToolResponse(status_code=resp.status_code, transport_error="Response is not a JSON-RPC object")
        return RawToolResponse(status_code=resp.status_code, body=body)
