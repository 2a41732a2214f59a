import json
import tempfile
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from shop_agent.api.app import create_app
from shop_agent.api.service import build_services
from shop_agent.config.settings import settings
from shop_agent.domain.models import ChatMessage, ModelStreamEvent, TextBlock


class SettingsStub:
    storage_root = ""
    rules_file = settings.rules_file
    default_model = "shop-chat"
    max_tokens = 100
    max_model_calls = 3
    max_products_to_display = 3
    product_search_tool = "search_shop_catalog"
    product_details_tool = "get_product_details"
    default_prompt_type = "standardAssistant"
    mcp_timeout = 1.0
    customer_api_client_id = "client-123"
    customer_api_scopes = "openid email"
    auth_callback_url = "http://localhost:3000/auth/callback"


class EchoProvider:
    name = "echo"

    async def stream(self, req):
        text = f"echo: {req.messages[-1].text}"
        yield ModelStreamEvent(kind="block_start", block_type="text")
        yield ModelStreamEvent(kind="text", text=text)
        yield ModelStreamEvent(kind="block_stop", block_type="text", block=TextBlock(text=text))
        yield ModelStreamEvent(kind="message", message=ChatMessage(role="assistant", content=[TextBlock(text=text)]), stop_reason="end_turn")


@pytest.fixture
def client():
    with tempfile.TemporaryDirectory() as d:
        cfg = SettingsStub()
        cfg.storage_root = d
        services = build_services(cfg=cfg, provider=EchoProvider())
        with TestClient(create_app(services)) as c:
            yield c


def _events(resp):
    return [json.loads(line[len("data: "):]) for line in resp.text.split("\n\n") if line.startswith("data: ")]


def test_chat_streams_events(client):
    resp = client.post("/chat", json={"message": "Bonjour", "conversation_id": "c1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    events = _events(resp)
    assert events[0] == {"type": "id", "conversation_id": "c1"}
    assert events[-1] == {"type": "end_turn"}
    assert {"type": "chunk", "chunk": "echo: Bonjour"} in events


def test_chat_vadf_prompt(client):
    resp = client.post(
        "/chat",
        json={"message": "Je suis bloqué, besoin d'aide", "conversation_id": "c2", "prompt_type": "vadfAssistant"},
    )
    types = [e["type"] for e in _events(resp)]
    assert types == ["id", "vadf_response", "escalade", "end_turn"]


def test_chat_missing_message(client):
    resp = client.post("/chat", json={"conversation_id": "c1"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "MISSING_MESSAGE"


def test_chat_invalid_conversation_id(client):
    resp = client.post("/chat", json={"message": "x", "conversation_id": "a-b"})
    assert resp.status_code == 400


def test_history(client):
    client.post("/chat", json={"message": "Bonjour", "conversation_id": "c3"})
    resp = client.get("/chat", params={"history": "true", "conversation_id": "c3"})
    assert resp.status_code == 200
    messages = resp.json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["content"] == [{"type": "text", "text": "echo: Bonjour"}]
    assert client.get("/chat", params={"history": "true"}).status_code == 400


def test_auth_customer_redirect(client):
    resp = client.get(
        "/auth/customer",
        params={"conversation_id": "c1", "shop_id": "shop.example"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert location.netloc == "shop.example"
    assert parse_qs(location.query)["state"] == ["c1-shop.example"]


def test_auth_customer_rejects_dashed_conversation_id(client):
    resp = client.get(
        "/auth/customer",
        params={"conversation_id": "a-b", "shop_id": "shop.example"},
        follow_redirects=False,
    )
    assert resp.status_code == 400


def test_auth_customer_missing_ids(client):
    resp = client.get("/auth/customer", params={"conversation_id": "c1"})
    assert resp.status_code == 400
    assert "Missing" in resp.text


def test_cors_preflight(client):
    resp = client.options(
        "/chat",
        headers={
            "Origin": "https://shop.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "https://shop.example"


class TokenResp:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body


def _token_endpoint(resp, calls):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, data=None, headers=None):
            calls.append((url, data))
            return resp

    return Client


@pytest.mark.parametrize(
    "params",
    [
        {"code": "abc"},
        {"state": "c1-shop.example"},
        {"code": "abc", "state": "c1"},
        {"code": "abc", "state": "-shop.example"},
    ],
)
def test_auth_callback_rejects_incomplete_requests(client, params):
    resp = client.get("/auth/callback", params=params)
    assert resp.status_code == 400


def test_auth_callback_stores_token(client, monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.AsyncClient",
        _token_endpoint(TokenResp(200, {"access_token": "tok-1", "expires_in": 3600}), calls),
    )
    resp = client.get("/auth/callback", params={"code": "abc", "state": "c9-shop.example"})
    assert resp.status_code == 200

    url, form = calls[0]
    assert url == "https://shop.example/auth/token"
    assert form["code"] == "abc"
    assert form["grant_type"] == "authorization_code"
    assert form["client_id"] == "client-123"

    auth = client.app.state.services.auth
    assert auth.access_token("c9") == "tok-1"


def test_auth_callback_upstream_failure(client, monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", _token_endpoint(TokenResp(400, {"error": "invalid_grant"}), []))
    resp = client.get("/auth/callback", params={"code": "bad", "state": "c9-shop.example"})
    assert resp.status_code == 502
    assert resp.json()["code"] == "TOKEN_EXCHANGE_FAILED"
    assert client.app.state.services.auth.access_token("c9") is None
