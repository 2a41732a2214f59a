import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shop_agent.config.settings import settings
from shop_agent.domain.conversation import ConversationStore, CustomerToken, MessageRecord
from shop_agent.domain.exceptions import BusinessError, ValidationError
from shop_agent.domain.models import Role


_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]{1,128}$")


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """基于文件的参考存储实现。

    目录结构::

        <root>/conversations/<conversation_id>/messages.jsonl
        <root>/conversations/<conversation_id>/meta.json    (客户账户 MCP 端点缓存)
        <root>/tokens/<conversation_id>.json
        <root>/accounts.json                                (账户目录，供状态查询)
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._token_root = self._root / "tokens"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._token_root.mkdir(parents=True, exist_ok=True)

    def append_message(self, conversation_id: str, role: Role, content: str) -> MessageRecord:
        cdir = self._conv_dir(conversation_id)
        cdir.mkdir(parents=True, exist_ok=True)
        record = MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        payload = {
            "id": record.id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": _iso(record.created_at),
        }
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        return record

    def load_history(self, conversation_id: str) -> List[MessageRecord]:
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        # 文件按追加顺序写入，行序即消息顺序
        for line in lines:
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            items.append(
                MessageRecord(
                    id=data["id"],
                    conversation_id=data["conversation_id"],
                    role=data["role"],
                    content=data.get("content") or "",
                    created_at=_parse_iso(data["created_at"]),
                )
            )
        return items

    def get_cached_endpoint(self, conversation_id: str) -> Optional[str]:
        meta = self._read_json(self._conv_dir(conversation_id) / "meta.json")
        return meta.get("customer_mcp_endpoint") if meta else None

    def cache_endpoint(self, conversation_id: str, url: str) -> None:
        cdir = self._conv_dir(conversation_id)
        cdir.mkdir(parents=True, exist_ok=True)
        meta = self._read_json(cdir / "meta.json") or {}
        meta["customer_mcp_endpoint"] = url
        self._write_json(cdir / "meta.json", meta)

    def get_token(self, conversation_id: str) -> Optional[CustomerToken]:
        data = self._read_json(self._token_root / f"{self._check_id(conversation_id)}.json")
        if not data or not data.get("access_token"):
            return None
        expires_at = data.get("expires_at")
        return CustomerToken(
            conversation_id=conversation_id,
            access_token=data["access_token"],
            expires_at=_parse_iso(expires_at) if expires_at else None,
        )

    def save_token(self, token: CustomerToken) -> None:
        self._write_json(
            self._token_root / f"{self._check_id(token.conversation_id)}.json",
            {
                "access_token": token.access_token,
                "expires_at": _iso(token.expires_at) if token.expires_at else None,
            },
        )

    def find_account(self, email: Optional[str] = None, account_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        accounts = self._read_json(self._root / "accounts.json") or {}
        for account in accounts.get("accounts", []):
            if email and account.get("email") == email:
                return account
            if not email and account_name and account.get("shop") == account_name:
                return account
        return None

    def _conv_dir(self, conversation_id: str) -> Path:
        return self._conv_root / self._check_id(conversation_id)

    @staticmethod
    def _check_id(conversation_id: str) -> str:
        if not _SAFE_ID.match(conversation_id or ""):
            raise ValidationError(code="INVALID_CONVERSATION_ID", message=f"Invalid conversation id: {conversation_id!r}")
        return conversation_id

    @staticmethod
    def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return data if isinstance(data, dict) else None

    @staticmethod
    def _write_json(path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
