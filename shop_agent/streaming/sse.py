"""Server-Sent Events 传输层。

- encode_event: 把 StreamEvent 编码为一帧 "data: <json>\\n\\n"。
- sse_stream: 把事件源转成 SSE 帧；每帧之前检查客户端是否已断开，
  断开即停止拉取并关闭事件源（其中进行中的模型/工具调用随之取消）。

轮次中途失败时不再发送 end_turn，记录日志后结束流，客户端以缺少 end_turn 判断失败。
"""

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from shop_agent.domain.exceptions import BusinessError
from shop_agent.domain.models import StreamEvent
from shop_agent.infrastructure.logging.logger import logger

DisconnectCheck = Callable[[], Awaitable[bool]]

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


async def sse_stream(
    events: AsyncIterator[StreamEvent],
    is_disconnected: Optional[DisconnectCheck] = None,
) -> AsyncIterator[str]:
    sent = 0
    try:
        async for event in events:
            if is_disconnected is not None and await is_disconnected():
                logger.info("sse.client_disconnected", extra={"extra": {"sent": sent}})
                return
            yield encode_event(event)
            sent += 1
    except asyncio.CancelledError:
        logger.info("sse.cancelled", extra={"extra": {"sent": sent}})
        raise
    except BusinessError as e:
        logger.error("sse.turn_failed", extra={"extra": {"code": e.code, "error": e.message, "sent": sent}})
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
