import json
import tempfile
from pathlib import Path

import pytest

from shop_agent.domain.exceptions import ValidationError
from shop_agent.domain.models import ChatMessage, TextBlock, ToolUseBlock, content_to_json
from shop_agent.infrastructure.storage.json_store import JsonConversationStore


def test_json_store_messages_in_order():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        store.append_message("c1", "user", "bonjour")
        blocks = [TextBlock(text="Je cherche."), ToolUseBlock(id="tu_1", name="search", input={"q": "x"})]
        store.append_message("c1", "assistant", content_to_json(blocks))

        records = store.load_history("c1")
        assert [r.role for r in records] == ["user", "assistant"]
        assert records[0].to_chat_message().content == "bonjour"
        assert records[1].to_chat_message().content == blocks
        # 重复加载结果一致
        assert [r.id for r in store.load_history("c1")] == [r.id for r in records]
        assert store.load_history("other") == []


def test_plain_text_starting_with_bracket_stays_text():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        store.append_message("c1", "user", "[1, 2] est-ce disponible ?")
        msg = store.load_history("c1")[0].to_chat_message()
        assert msg == ChatMessage(role="user", content="[1, 2] est-ce disponible ?")


def test_endpoint_cache():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        assert store.get_cached_endpoint("c1") is None
        store.cache_endpoint("c1", "https://account.test/mcp")
        assert store.get_cached_endpoint("c1") == "https://account.test/mcp"


def test_find_account():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        (root / "accounts.json").write_text(
            json.dumps({"accounts": [{"email": "pro@vadf.fr", "shop": "Atelier", "accountOwner": True}]}),
            encoding="utf-8",
        )
        store = JsonConversationStore(root=root)
        assert store.find_account(email="pro@vadf.fr")["shop"] == "Atelier"
        assert store.find_account(account_name="Atelier")["email"] == "pro@vadf.fr"
        assert store.find_account(email="nobody@vadf.fr") is None


def test_rejects_unsafe_ids():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        with pytest.raises(ValidationError):
            store.append_message("../escape", "user", "x")
