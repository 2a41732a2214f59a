"""Claude Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 Claude Messages API 的流式请求（stream=true）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 逐行解析 SSE，把 content_block_* / message_delta 事件转换为 ModelStreamEvent，
   并在结束时组装完整的 assistant 消息（含 tool_use 内容块）。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from shop_agent.config.settings import settings
from shop_agent.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from shop_agent.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatUsage,
    ContentBlock,
    ModelStreamEvent,
    TextBlock,
    ToolUseBlock,
)
from shop_agent.providers.registry import CLAUDE_CONFIG, ModelConfig, get_model_config


class _BlockBuffer:
    """累积单个内容块的增量。"""

    def __init__(self, start: Dict[str, Any]):
        self.type = start.get("type") or "text"
        self.id = start.get("id") or ""
        self.name = start.get("name") or ""
        self.text_parts: List[str] = [start.get("text") or ""]
        self.json_parts: List[str] = []
        self.initial_input = start.get("input") or {}

    def finish(self) -> ContentBlock:
        if self.type == "tool_use":
            raw = "".join(self.json_parts)
            return ToolUseBlock(id=self.id, name=self.name, input=ClaudeClient._parse_arguments(raw) if raw else self.initial_input)
        return TextBlock(text="".join(self.text_parts))


class ClaudeClient:
    """Claude 提供方客户端实现。"""

    name = "claude"

    def __init__(self, cfg=settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg

    async def stream(self, req: ChatRequest) -> AsyncIterator[ModelStreamEvent]:
        """执行一次流式对话调用，逐步 yield ModelStreamEvent。"""

        if not getattr(self._settings, "anthropic_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="ANTHROPIC_API_KEY not set")
        model_cfg = get_model_config(self.name, req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "anthropic_base_url", None) or CLAUDE_CONFIG.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{base}/messages",
                    json=payload,
                    headers={
                        "x-api-key": self._settings.anthropic_api_key,
                        "anthropic-version": getattr(self._settings, "anthropic_version", "2023-06-01"),
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="Claude rate limit")
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    async for event in self._parse_sse(resp.aiter_lines()):
                        yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def _parse_sse(self, lines: AsyncIterator[str]) -> AsyncIterator[ModelStreamEvent]:
        blocks: Dict[int, _BlockBuffer] = {}
        finished: Dict[int, ContentBlock] = {}
        stop_reason: Optional[str] = None
        input_tokens = 0
        output_tokens = 0

        async for line in lines:
            if not line or not line.startswith("data:"):
                continue
            data_str = line[5:].strip()
            if not data_str or data_str == "[DONE]":
                continue
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            kind = data.get("type")

            if kind == "message_start":
                usage = (data.get("message") or {}).get("usage") or {}
                input_tokens = usage.get("input_tokens", 0)
            elif kind == "content_block_start":
                buf = _BlockBuffer(data.get("content_block") or {})
                blocks[data.get("index", len(blocks))] = buf
                yield ModelStreamEvent(kind="block_start", block_type=buf.type)
            elif kind == "content_block_delta":
                buf = blocks.get(data.get("index", 0))
                delta = data.get("delta") or {}
                if buf is None:
                    continue
                if delta.get("type") == "text_delta":
                    text = delta.get("text") or ""
                    buf.text_parts.append(text)
                    if text:
                        yield ModelStreamEvent(kind="text", text=text)
                elif delta.get("type") == "input_json_delta":
                    buf.json_parts.append(delta.get("partial_json") or "")
            elif kind == "content_block_stop":
                index = data.get("index", 0)
                buf = blocks.get(index)
                if buf is None:
                    continue
                block = buf.finish()
                finished[index] = block
                yield ModelStreamEvent(kind="block_stop", block_type=buf.type, block=block)
            elif kind == "message_delta":
                stop_reason = (data.get("delta") or {}).get("stop_reason") or stop_reason
                output_tokens = (data.get("usage") or {}).get("output_tokens", output_tokens)
            elif kind == "error":
                err = data.get("error") or {}
                raise ApiError(code="API_STREAM_ERROR", message=err.get("message") or str(err), http_status=502)

        content = [finished[i] for i in sorted(finished)]
        yield ModelStreamEvent(
            kind="message",
            message=ChatMessage(role="assistant", content=content),
            stop_reason=stop_reason or "end_turn",
            usage=ChatUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        )

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        """将 ChatRequest 转成 Claude 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "messages": [m.to_payload() for m in req.messages],
            "stream": True,
        }
        if req.system:
            payload["system"] = [{"type": "text", "text": s} for s in req.system]
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        # 工具列表为空时不传 tools 字段
        if req.tools:
            payload["tools"] = [t.to_model_schema() for t in req.tools]
        return payload

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """解析 tool_use 的 input。

        流式返回时 input 以 partial_json 片段到达，拼接后做一次 json.loads，
        失败时保留原始字符串到 `_raw`，避免信息丢失。
        """

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
                return parsed if isinstance(parsed, dict) else {"_raw": raw}
            except json.JSONDecodeError:
                return {"_raw": raw}
        return {}
