from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from .models import ChatMessage, Role, content_from_json


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=content_from_json(self.content))


@dataclass
class CustomerToken:
    conversation_id: str
    access_token: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class ConversationStore(Protocol):
    """对话核心依赖的外部存储契约（键值语义）。"""

    def append_message(self, conversation_id: str, role: Role, content: str) -> MessageRecord:
        ...

    def load_history(self, conversation_id: str) -> List[MessageRecord]:
        ...

    def get_cached_endpoint(self, conversation_id: str) -> Optional[str]:
        ...

    def cache_endpoint(self, conversation_id: str, url: str) -> None:
        ...

    def get_token(self, conversation_id: str) -> Optional[CustomerToken]:
        ...

    def save_token(self, token: CustomerToken) -> None:
        ...

    def find_account(self, email: Optional[str] = None, account_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        ...
