"""统一的对话与结果数据模型。

本模块定义了编排器、模型 Provider、工具客户端之间共享的标准数据结构：

- TextBlock / ToolUseBlock / ToolResultBlock: 消息内容块（在边界处一次性解析）。
- ChatMessage: 一条对话消息（user/assistant），content 为字符串或内容块列表。
- ChatRequest: 发给模型 Provider 的完整请求。
- ModelStreamEvent: Provider 流式输出的统一增量事件。
- StreamEvent: 推送给客户端的事件（固定词汇表）。

存储层只保存 JSON，所有"字符串里嵌 JSON"的解析都集中在
content_from_json / content_to_json 两个函数里。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from shop_agent.tools.definitions import ToolDescriptor


Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    """模型发起的一次工具调用（tool_use）。"""

    id: str
    name: str
    input: Dict[str, Any]
    type: Literal["tool_use"] = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    """工具结果，tool_use_id 必须对应此前某条 assistant 消息中的 ToolUseBlock。"""

    tool_use_id: str
    content: Any
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]
MessageContent = Union[str, List[ContentBlock]]


def block_to_dict(block: ContentBlock) -> Dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    payload: Dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
    }
    if block.is_error:
        payload["is_error"] = True
    return payload


def block_from_dict(data: Dict[str, Any]) -> Optional[ContentBlock]:
    """把 API / 存储中的 dict 转为内容块；未知类型返回 None。"""

    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text") or "")
    if kind == "tool_use":
        return ToolUseBlock(id=data.get("id") or "", name=data.get("name") or "", input=data.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=data.get("tool_use_id") or "",
            content=data.get("content"),
            is_error=bool(data.get("is_error", False)),
        )
    return None


def content_to_json(content: MessageContent) -> str:
    """序列化消息内容：纯文本原样保存，内容块列表保存为 JSON 数组。"""

    if isinstance(content, str):
        return content
    return json.dumps([block_to_dict(b) for b in content], ensure_ascii=False)


def content_from_json(raw: str) -> MessageContent:
    """反序列化消息内容。只有合法的内容块 JSON 数组才会被解析为块列表。"""

    text = raw or ""
    if not text.startswith("["):
        return text
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if not isinstance(data, list) or not all(isinstance(d, dict) and "type" in d for d in data):
        return text
    blocks = [block_from_dict(d) for d in data]
    return [b for b in blocks if b is not None]


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: user / assistant（工具结果按 Claude 约定以 user 角色回填）。
    - content: 纯文本或内容块列表。
    - meta: 附加元数据，不发给模型，仅用于日志与存储。
    """

    role: Role
    content: MessageContent
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def blocks(self) -> List[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def to_payload(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block_to_dict(b) for b in self.content]}


@dataclass
class ChatRequest:
    """一次完整的模型请求。

    Agent 会将历史、系统提示词与工具列表组装成 ChatRequest，
    Provider 适配层负责把本结构转换成具体 API 的 JSON 请求体。
    """

    model: str  # 逻辑模型名，如 "shop-chat"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    system: List[str] = field(default_factory=list)
    tools: Optional[List["ToolDescriptor"]] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    input_tokens: int
    output_tokens: int


@dataclass
class ModelStreamEvent:
    """Provider 流式输出的统一增量。

    kind:
        - "block_start": 新内容块开始，block_type 为 text / tool_use。
        - "text": 文本增量，text 字段有值。
        - "block_stop": 一个内容块结束，block 为完整内容块。
        - "message": 整条 assistant 消息结束，message 与 stop_reason 有值。
    """

    kind: Literal["block_start", "text", "block_stop", "message"]
    text: str = ""
    block_type: Optional[str] = None
    block: Optional[ContentBlock] = None
    message: Optional[ChatMessage] = None
    stop_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None


StreamEventType = Literal[
    "id",
    "chunk",
    "message_complete",
    "new_message",
    "content_block_complete",
    "tool_use",
    "auth_required",
    "vadf_response",
    "escalade",
    "product_results",
    "end_turn",
]

STREAM_EVENT_TYPES = frozenset(StreamEventType.__args__)  # type: ignore[attr-defined]


@dataclass(frozen=True)
class StreamEvent:
    """推送给客户端的事件，序列化后为 {"type": ..., **payload}。"""

    type: StreamEventType
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in STREAM_EVENT_TYPES:
            raise ValueError(f"Unknown stream event type: {self.type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.payload}
