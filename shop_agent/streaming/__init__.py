"""SSE 事件流。"""

from shop_agent.streaming.sse import SSE_HEADERS, encode_event, sse_stream

__all__ = ["SSE_HEADERS", "encode_event", "sse_stream"]
