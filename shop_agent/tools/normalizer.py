"""工具结果归一化。

- classify(raw): 把工具服务器的原始响应分类为 成功 / 需要授权 / 一般错误。
- extract_structured(outcome, hint): 从成功结果中抽取结构化数据（商品列表等）。

非法 JSON 不会中断对话：记录 MalformedToolPayload 日志并返回空结果。
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from shop_agent.config.settings import settings
from shop_agent.domain.exceptions import MalformedToolPayload
from shop_agent.infrastructure.logging.logger import log_event
from shop_agent.tools.definitions import (
    AuthRequiredOutcome,
    ErrorOutcome,
    RawToolResponse,
    SuccessOutcome,
    ToolOutcome,
)


AUTH_REQUIRED = "auth_required"
PRICE_UNAVAILABLE = "Prix non disponible"


class SchemaHint(str, Enum):
    PRODUCT_SEARCH = "product_search"
    PRODUCT_DETAILS = "product_details"


def _is_auth_marker(error: Any) -> bool:
    if not isinstance(error, dict):
        return False
    if error.get("type") == AUTH_REQUIRED:
        return True
    data = error.get("data")
    return isinstance(data, dict) and data.get("type") == AUTH_REQUIRED


def classify(raw: RawToolResponse) -> ToolOutcome:
    """对原始响应分类。

    需要授权的判定：HTTP 401/403，或 JSON-RPC error（或 error.data）带有
    type == "auth_required"。这一区分决定编排器是否终止本轮。
    """

    if raw.status_code in (401, 403):
        detail = (raw.body or {}).get("error") if raw.body else None
        return AuthRequiredOutcome(challenge=_error_data(detail) or "Customer authorization required")
    if raw.transport_error:
        return ErrorOutcome(detail=raw.transport_error)
    body = raw.body or {}
    error = body.get("error")
    if error is not None:
        if _is_auth_marker(error):
            return AuthRequiredOutcome(challenge=_error_data(error))
        return ErrorOutcome(detail=_error_data(error))
    if raw.status_code >= 400:
        return ErrorOutcome(detail=f"HTTP {raw.status_code}")
    result = body.get("result")
    if not isinstance(result, dict):
        return ErrorOutcome(detail="Tool response has no result")
    if result.get("isError"):
        return ErrorOutcome(detail=result.get("content") or "Tool reported an error")
    return SuccessOutcome(payload=result)


def _error_data(error: Any) -> Any:
    if isinstance(error, dict):
        return error.get("data") if error.get("data") is not None else error.get("message")
    return error


def _first_text(outcome: SuccessOutcome) -> Optional[Union[str, Dict[str, Any]]]:
    for item in outcome.content:
        if isinstance(item, dict) and item.get("type", "text") == "text":
            return item.get("text")
    return None


def parse_payload(outcome: ToolOutcome) -> Dict[str, Any]:
    """把成功结果的第一段文本解析为 JSON 对象；失败时返回空 dict。"""

    if not isinstance(outcome, SuccessOutcome):
        return {}
    content = _first_text(outcome)
    if content is None:
        return {}
    if isinstance(content, dict):
        return content
    try:
        data = json.loads(content)
        if not isinstance(data, dict):
            raise MalformedToolPayload(code="MALFORMED_TOOL_PAYLOAD", message="payload is not an object")
        return data
    except (json.JSONDecodeError, TypeError, MalformedToolPayload) as exc:
        log_event(logging.INFO, "Tool payload is not valid JSON", error=str(exc), preview=str(content)[:120])
        return {}


def _price(product: Dict[str, Any]) -> str:
    price_range = product.get("price_range")
    if isinstance(price_range, dict) and price_range:
        return f"{price_range.get('currency', '')} {price_range.get('min', '')}".strip() or PRICE_UNAVAILABLE
    variants = product.get("variants")
    if isinstance(variants, list) and variants and isinstance(variants[0], dict):
        first = variants[0]
        return f"{first.get('currency', '')} {first.get('price', '')}".strip() or PRICE_UNAVAILABLE
    return PRICE_UNAVAILABLE


def _text(value: Any, default: str = "") -> str:
    if value is None or value == "" or isinstance(value, (dict, list)):
        return default
    return str(value)


def format_product(product: Dict[str, Any]) -> Dict[str, str]:
    """每个字段都有兜底值；price_range / variants 结构不符时显示 PRICE_UNAVAILABLE。"""

    return {
        "id": _text(product.get("product_id"), f"product-{uuid4().hex[:7]}"),
        "title": _text(product.get("title"), "Produit"),
        "price": _price(product),
        "image_url": _text(product.get("image_url")),
        "description": _text(product.get("description")),
        "url": _text(product.get("url")),
        "embedded_url": _text(product.get("embedded_url")),
    }


def extract_structured(
    outcome: ToolOutcome,
    hint: SchemaHint,
    limit: Optional[int] = None,
) -> Union[List[Dict[str, str]], Dict[str, Any]]:
    """按 hint 抽取结构化数据。

    - PRODUCT_SEARCH: 最多 limit（默认 settings.max_products_to_display）条商品，保持原顺序。
    - PRODUCT_DETAILS: 返回 product 对象，没有时为空 dict。
    """

    data = parse_payload(outcome)
    if hint is SchemaHint.PRODUCT_DETAILS:
        product = data.get("product")
        return product if isinstance(product, dict) else {}
    products = data.get("products")
    if not isinstance(products, list):
        return []
    cap = limit if limit is not None else settings.max_products_to_display
    entries = [p for p in products if isinstance(p, dict)]
    return [format_product(p) for p in entries[:cap]]
