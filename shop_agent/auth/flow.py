"""客户账户 OAuth 授权流程。

- build_authorization_url: 构造跳转到店铺授权页的 URL，state 为 "<conversation_id>-<shop_id>"。
- complete_authorization: 回调时用授权码换取访问令牌，并按会话保存。
- has_valid_token / access_token: 查询某个会话是否已有未过期的访问令牌。

编排器在调用任何客户账户工具之前都要先问这里，没有令牌时直接短路本轮。
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

import httpx

from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore, CustomerToken
from shop_agent.domain.exceptions import ApiError, BusinessError, MissingRequestParameters, NetworkError
from shop_agent.infrastructure.logging.logger import log_event

# 与编排器接受的会话 ID 规则一致；不含 "-" 才能从 state 中无歧义地拆出来
CONVERSATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.]{1,128}$")


def make_state(conversation_id: str, shop_id: str) -> str:
    return f"{conversation_id}-{shop_id}"


def parse_state(state: Optional[str]) -> Tuple[str, str]:
    """拆分 state；会话 ID 不含 "-"，因此按第一个 "-" 切分。"""

    conversation_id, sep, shop_id = (state or "").partition("-")
    if not sep or not conversation_id or not shop_id:
        raise MissingRequestParameters(code="INVALID_STATE", message="state must be <conversation_id>-<shop_id>")
    if not CONVERSATION_ID_PATTERN.match(conversation_id):
        raise MissingRequestParameters(code="INVALID_STATE", message="state carries an invalid conversation_id")
    return conversation_id, shop_id


class AuthFlowManager:
    def __init__(self, store: ConversationStore, cfg=settings):
        self._store = store
        self._settings = cfg

    def build_authorization_url(self, conversation_id: Optional[str], shop_id: Optional[str]) -> str:
        if not conversation_id or not shop_id:
            raise MissingRequestParameters(
                code="MISSING_PARAMETERS",
                message="Missing conversation_id or shop_id",
            )
        if not CONVERSATION_ID_PATTERN.match(conversation_id):
            raise MissingRequestParameters(
                code="INVALID_CONVERSATION_ID",
                message="conversation_id may only contain letters, digits, '_' and '.'",
            )
        query = urlencode(
            {
                "client_id": self._settings.customer_api_client_id or "",
                "scope": self._settings.customer_api_scopes,
                "redirect_uri": self._settings.auth_callback_url,
                "response_type": "code",
                "state": make_state(conversation_id, shop_id),
            },
            quote_via=quote,
        )
        return f"https://{shop_id}/auth/authorize?{query}"

    def token_url(self, shop_id: str) -> str:
        return f"https://{shop_id}/auth/token"

    async def complete_authorization(self, code: Optional[str], state: Optional[str]) -> CustomerToken:
        """OAuth 回调：校验 code/state，换取令牌并保存到存储。

        Raises:
            MissingRequestParameters: code 缺失或 state 无法解析（HTTP 400）。
            NetworkError / ApiError: 令牌端点不可达或返回错误。
        """

        if not code:
            raise MissingRequestParameters(code="MISSING_PARAMETERS", message="Missing code")
        conversation_id, shop_id = parse_state(state)

        form = {
            "grant_type": "authorization_code",
            "client_id": self._settings.customer_api_client_id or "",
            "redirect_uri": self._settings.auth_callback_url,
            "code": code,
        }
        secret = getattr(self._settings, "customer_api_client_secret", None)
        if secret:
            form["client_secret"] = secret

        url = self.token_url(shop_id)
        try:
            async with httpx.AsyncClient(timeout=self._settings.mcp_timeout, trust_env=False) as client:
                resp = await client.post(url, data=form, headers={"Accept": "application/json"})
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), http_status=502, url=url)
        if resp.status_code >= 400:
            raise ApiError(code="TOKEN_EXCHANGE_FAILED", message=resp.text, http_status=502, upstream_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="TOKEN_EXCHANGE_FAILED", message=str(e), http_status=502)
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise ApiError(code="TOKEN_EXCHANGE_FAILED", message="access_token missing", http_status=502)

        expires_at = None
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        token = CustomerToken(conversation_id=conversation_id, access_token=str(access_token), expires_at=expires_at)
        self._store.save_token(token)
        log_event(logging.INFO, "Customer token stored", conversation_id=conversation_id, shop_id=shop_id)
        return token

    def current_token(self, conversation_id: str) -> Optional[CustomerToken]:
        try:
            token = self._store.get_token(conversation_id)
        except BusinessError as e:
            log_event(logging.WARNING, "Token lookup failed", conversation_id=conversation_id, error=e.message)
            return None
        if token is None or token.is_expired():
            return None
        return token

    def has_valid_token(self, conversation_id: str) -> bool:
        return self.current_token(conversation_id) is not None

    def access_token(self, conversation_id: str) -> Optional[str]:
        token = self.current_token(conversation_id)
        return token.access_token if token else None
