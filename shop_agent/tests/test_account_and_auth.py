import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from shop_agent.auth.flow import AuthFlowManager, make_state, parse_state
from shop_agent.domain.conversation import CustomerToken
from shop_agent.domain.exceptions import ApiError, MissingRequestParameters
from shop_agent.infrastructure.storage.json_store import JsonConversationStore
from shop_agent.intents.account import check_customer_account


class Lookup:
    def __init__(self, account):
        self.account = account
        self.calls = []

    def find_account(self, email=None, account_name=None):
        self.calls.append((email, account_name))
        return self.account


class AuthSettingsStub:
    customer_api_client_id = "client-123"
    customer_api_scopes = "openid email profile phone"
    auth_callback_url = "http://localhost:3000/auth/callback"
    mcp_timeout = 1.0


@pytest.mark.parametrize(
    "account,status",
    [
        (None, "not_found"),
        ({"scope": "B2C"}, "not_pro"),
        ({"accountOwner": True, "emailVerified": True}, "active"),
        ({"scope": "B2B", "isOnline": False}, "inactive"),
        ({"accountOwner": True}, "pro_pending"),
        ({"scope": "B2B"}, "unknown"),
    ],
)
def test_check_customer_account_statuses(account, status):
    result = check_customer_account(Lookup(account), email="pro@vadf.fr")
    assert result.status == status


def test_not_pro_escalates_to_support():
    result = check_customer_account(Lookup({"scope": "B2C"}), email="x@y.fr")
    assert result.escalade is True
    assert result.contact == "contact@vadf.fr"


def test_active_status_context():
    result = check_customer_account(Lookup({"accountOwner": True, "isOnline": True}), account_name="Atelier")
    assert result.as_context() == {"statut_compte": "active", "compte_actif": True, "reset_possible": True}


def test_lookup_skipped_without_identifiers():
    lookup = Lookup({"accountOwner": True})
    assert check_customer_account(lookup).status == "not_found"
    assert lookup.calls == []


def test_authorization_url():
    with tempfile.TemporaryDirectory() as d:
        auth = AuthFlowManager(JsonConversationStore(root=Path(d)), cfg=AuthSettingsStub())
        url = auth.build_authorization_url("conv1", "shop.example")
    parsed = urlparse(url)
    assert parsed.scheme == "https"
    assert parsed.netloc == "shop.example"
    assert parsed.path == "/auth/authorize"
    query = parse_qs(parsed.query)
    assert query["client_id"] == ["client-123"]
    assert query["scope"] == ["openid email profile phone"]
    assert query["redirect_uri"] == ["http://localhost:3000/auth/callback"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["conv1-shop.example"]
    assert "%20" in parsed.query


def test_authorization_url_requires_ids():
    with tempfile.TemporaryDirectory() as d:
        auth = AuthFlowManager(JsonConversationStore(root=Path(d)), cfg=AuthSettingsStub())
        with pytest.raises(MissingRequestParameters) as ei:
            auth.build_authorization_url("conv1", None)
    assert ei.value.http_status == 400


def test_state_round_trip_and_invalid():
    assert parse_state(make_state("conv1", "shop-with-dash.example")) == ("conv1", "shop-with-dash.example")
    with pytest.raises(MissingRequestParameters):
        parse_state("nodash")
    with pytest.raises(MissingRequestParameters):
        parse_state(None)
    with pytest.raises(MissingRequestParameters):
        parse_state("c@1-shop.example")


def test_authorization_url_rejects_dashed_conversation_id():
    with tempfile.TemporaryDirectory() as d:
        auth = AuthFlowManager(JsonConversationStore(root=Path(d)), cfg=AuthSettingsStub())
        with pytest.raises(MissingRequestParameters):
            auth.build_authorization_url("a-b", "shop.example")


def test_token_validity():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        auth = AuthFlowManager(store, cfg=AuthSettingsStub())
        assert auth.has_valid_token("c1") is False

        future = datetime.now(timezone.utc) + timedelta(hours=1)
        store.save_token(CustomerToken(conversation_id="c1", access_token="tok", expires_at=future))
        assert auth.access_token("c1") == "tok"

        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        store.save_token(CustomerToken(conversation_id="c2", access_token="old", expires_at=past))
        assert auth.has_valid_token("c2") is False
        assert auth.access_token("c2") is None


class TokenEndpoint:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.body = body
        self.text = str(body)
        self.forms = []

    def client(self):
        endpoint = self

        class Client:
            def __init__(self, *a, **kw):
                pass

            async def __aenter__(self):
                return self

            async def __aexit__(self, *a):
                return False

            async def post(self, url, data=None, headers=None):
                endpoint.forms.append((url, data))
                return endpoint

        return Client

    def json(self):
        return self.body


def test_complete_authorization_saves_token(monkeypatch):
    endpoint = TokenEndpoint(200, {"access_token": "tok", "expires_in": 60})
    monkeypatch.setattr("httpx.AsyncClient", endpoint.client())
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        auth = AuthFlowManager(store, cfg=AuthSettingsStub())
        token = asyncio.run(auth.complete_authorization("code-1", make_state("c1", "shop.example")))
        assert token.conversation_id == "c1"
        assert token.expires_at > datetime.now(timezone.utc)
        assert store.get_token("c1").access_token == "tok"
    url, form = endpoint.forms[0]
    assert url == "https://shop.example/auth/token"
    assert form["redirect_uri"] == "http://localhost:3000/auth/callback"
    assert "client_secret" not in form


def test_complete_authorization_without_expiry(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", TokenEndpoint(200, {"access_token": "tok"}).client())
    with tempfile.TemporaryDirectory() as d:
        auth = AuthFlowManager(JsonConversationStore(root=Path(d)), cfg=AuthSettingsStub())
        token = asyncio.run(auth.complete_authorization("code-1", "c1-shop.example"))
        assert token.expires_at is None
        assert auth.has_valid_token("c1")


def test_complete_authorization_rejects_missing_code():
    with tempfile.TemporaryDirectory() as d:
        auth = AuthFlowManager(JsonConversationStore(root=Path(d)), cfg=AuthSettingsStub())
        with pytest.raises(MissingRequestParameters):
            asyncio.run(auth.complete_authorization(None, "c1-shop.example"))
        with pytest.raises(MissingRequestParameters):
            asyncio.run(auth.complete_authorization("code-1", "c1"))


def test_complete_authorization_upstream_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", TokenEndpoint(401, {"error": "invalid_client"}).client())
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        auth = AuthFlowManager(store, cfg=AuthSettingsStub())
        with pytest.raises(ApiError) as ei:
            asyncio.run(auth.complete_authorization("code-1", "c1-shop.example"))
        assert ei.value.code == "TOKEN_EXCHANGE_FAILED"
        assert store.get_token("c1") is None
