"""
Data models for storage layer.

Defines the rows persisted by the durable store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class ConversationTurn:
    """One message of a conversation.

    Turns are appended once per exchange and never modified. The ephemeral
    tier holds a copy of the newest turns of the same stream.
    """
    user_id: str
    platform: str
    chat_id: str
    role: str
    content: str
    timestamp: datetime

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the ephemeral store."""
        return {
            "user_id": self.user_id,
            "platform": self.platform,
            "chat_id": self.chat_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            user_id=str(data["user_id"]),
            platform=str(data["platform"]),
            chat_id=str(data["chat_id"]),
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )

    def as_message(self) -> Dict[str, str]:
        """Chat-completion message form."""
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class UsageSnapshot:
    """Global daily usage of one api type, persisted best-effort."""
    date: str
    api_type: str
    count: int
    updated_at: datetime
