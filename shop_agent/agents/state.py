"""State definition for the conversation turn graph."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TypedDict

from shop_agent.domain.models import ChatMessage, ToolUseBlock
from shop_agent.prompts import Strategy
from shop_agent.tools.definitions import ToolCatalog


class TurnState(TypedDict, total=False):
    """State shared across graph nodes for one chat turn.

    节点之间只通过返回值传递更新（商品列表、历史等都按值返回），
    不依赖闭包里被多处修改的累加器。
    """

    conversation_id: str
    user_message: str
    prompt_type: Optional[str]
    strategy: Strategy
    context: Dict[str, Any]
    current_page_url: Optional[str]
    history: List[ChatMessage]
    catalog: ToolCatalog
    intent: Optional[str]
    stop_reason: Optional[str]
    model_calls: int
    pending_tools: List[ToolUseBlock]
    products: List[Dict[str, str]]
    embedded_urls: List[str]
