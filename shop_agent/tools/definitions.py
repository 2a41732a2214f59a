"""工具数据结构定义。

这些 dataclass 描述了"远程工具"的 schema，既用于：
- 将发现到的工具列表暴露给模型（ToolDescriptor）。
- 在编排器中保存和执行模型触发的工具调用（ToolInvocation / ToolOutcome）。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union


class ToolOrigin(str, Enum):
    """工具所在的服务器：店铺公开工具 / 需要客户授权的账户工具。"""

    STOREFRONT = "storefront"
    CUSTOMER = "customer"


@dataclass(frozen=True)
class ToolDescriptor:
    """一个可供模型调用的远程工具。"""

    name: str
    description: str
    input_schema: Dict[str, Any]
    origin: ToolOrigin

    def to_model_schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }


@dataclass(frozen=True)
class ToolInvocation:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class RawToolResponse:
    """工具服务器的原始响应，尚未分类。"""

    status_code: int
    body: Optional[Dict[str, Any]] = None
    transport_error: Optional[str] = None


@dataclass(frozen=True)
class SuccessOutcome:
    payload: Dict[str, Any]

    @property
    def content(self) -> List[Dict[str, Any]]:
        return list(self.payload.get("content") or [])


@dataclass(frozen=True)
class AuthRequiredOutcome:
    challenge: Any = None


@dataclass(frozen=True)
class ErrorOutcome:
    detail: Any = None


ToolOutcome = Union[SuccessOutcome, AuthRequiredOutcome, ErrorOutcome]


@dataclass
class ToolCatalog:
    """单次请求内发现到的工具集合，记录每个工具来自哪个服务器。"""

    tools: List[ToolDescriptor] = field(default_factory=list)

    def extend(self, descriptors: Iterable[ToolDescriptor]) -> None:
        known = {t.name for t in self.tools}
        for d in descriptors:
            if d.name not in known:
                self.tools.append(d)
                known.add(d.name)

    def origin_of(self, name: str) -> Optional[ToolOrigin]:
        for t in self.tools:
            if t.name == name:
                return t.origin
        return None

    def __len__(self) -> int:
        return len(self.tools)
