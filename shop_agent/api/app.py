"""HTTP 层（FastAPI）。

- POST /chat                                   对话一轮，SSE 流式返回事件。
- GET  /chat?history=true&conversation_id=...  读取会话历史。
- GET  /auth/customer?conversation_id=...&shop_id=...  跳转到客户账户授权页。
- GET  /auth/callback?code=...&state=...             授权回调：换取令牌并保存。

BusinessError 统一映射为 {"error", "code"} JSON，状态码取 http_status。
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, Field

from shop_agent.agents.orchestrator import TurnRequest, validate_request
from shop_agent.api.service import ChatServices, get_conversation_messages, get_services
from shop_agent.auth.flow import CONVERSATION_ID_PATTERN
from shop_agent.domain.exceptions import BusinessError, MissingRequestParameters
from shop_agent.infrastructure.logging.logger import logger
from shop_agent.streaming.sse import SSE_HEADERS, sse_stream

SHOP_ID_HEADER = "X-Shopify-Shop-Id"
CALLBACK_SUCCESS = "Connexion réussie. Vous pouvez fermer cette fenêtre et reprendre la conversation."


class ChatBody(BaseModel):
    message: Optional[str] = None
    conversation_id: Optional[str] = None
    prompt_type: Optional[str] = None
    current_page_url: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


def _services(request: Request) -> ChatServices:
    return request.app.state.services


def create_app(services: Optional[ChatServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or get_services()
        yield

    app = FastAPI(title="Shop Agent", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        logger.warning(
            "http.business_error",
            extra={"extra": {"path": request.url.path, "code": exc.code, "error": exc.message}},
        )
        return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.http_status)

    @app.post("/chat")
    async def chat(body: ChatBody, request: Request) -> StreamingResponse:
        turn = validate_request(
            TurnRequest(
                message=body.message,
                conversation_id=body.conversation_id,
                prompt_type=body.prompt_type,
                shop_origin=request.headers.get("origin"),
                shop_id=request.headers.get(SHOP_ID_HEADER),
                current_page_url=body.current_page_url,
                context=body.context,
            )
        )
        events = _services(request).orchestrator.run_turn(turn)
        return StreamingResponse(
            sse_stream(events, request.is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/chat")
    async def chat_history(
        request: Request,
        history: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> JSONResponse:
        if history is None or not conversation_id:
            raise MissingRequestParameters(code="MISSING_PARAMETERS", message="Missing history or conversation_id")
        messages = get_conversation_messages(_services(request), conversation_id)
        return JSONResponse({"conversation_id": conversation_id, "messages": messages})

    @app.get("/auth/customer")
    async def auth_customer(
        request: Request,
        conversation_id: Optional[str] = None,
        shop_id: Optional[str] = None,
    ):
        if not conversation_id or not shop_id:
            return PlainTextResponse("Missing conversation_id or shop_id", status_code=400)
        if not CONVERSATION_ID_PATTERN.match(conversation_id):
            return PlainTextResponse("Invalid conversation_id", status_code=400)
        url = _services(request).auth.build_authorization_url(conversation_id, shop_id)
        return RedirectResponse(url, status_code=302)

    @app.get("/auth/callback")
    async def auth_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ):
        try:
            token = await _services(request).auth.complete_authorization(code, state)
        except MissingRequestParameters as e:
            logger.warning("auth.callback_rejected", extra={"extra": {"code": e.code, "error": e.message}})
            return PlainTextResponse(e.message, status_code=400)
        logger.info("auth.callback_done", extra={"extra": {"conversation_id": token.conversation_id}})
        return PlainTextResponse(CALLBACK_SUCCESS)

    return app
