from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Supabase returns UTC; naive values are treated as UTC so comparisons never mix
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeliveryState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class Conversation(BaseModel):
    id: int
    type: ConversationType
    direct_key: Optional[str] = None
    community_id: Optional[int] = None
    created_at: Optional[datetime] = None


class Membership(BaseModel):
    conversation_id: Optional[int] = None
    user_id: int
    last_read_at: Optional[datetime] = None
    role: str = "member"

    @field_validator("last_read_at")
    @classmethod
    def make_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class ConversationSummary(BaseModel):
    conversation_id: int
    conversation: Optional[Conversation] = None
    last_read_at: Optional[datetime] = None


class Message(BaseModel):
    """
    One chat message as the timeline holds it.

    `id` is the server's integer id, or a `tmp-...` string while an optimistic
    send is unconfirmed. `delivery_state` only applies to the local user's
    own messages and stays None for everybody else's.
    """

    id: Union[int, str]
    conversation_id: int
    author_user_id: int
    text: str
    created_at: datetime
    delivery_state: Optional[DeliveryState] = None
    attachments: List[Any] = Field(default_factory=list)
    local_seq: Optional[int] = None

    @field_validator("created_at")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return _aware(value)

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.id, str) and self.id.startswith("tmp-")

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        """Build from a `messages` row (PostgREST response or realtime record)."""
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            author_user_id=row["user_id"],
            text=row.get("content") or "",
            created_at=row["created_at"],
            attachments=row.get("attachments") or [],
        )


# Direct conversations
class CreateDirectConversationModel(BaseModel):
    receiver_id: int


class CreateGroupConversationModel(BaseModel):
    community_id: int


class ConversationResponseModel(BaseModel):
    conversation: Conversation


# Listing
class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationSummary]


class GetMembersResponseModel(BaseModel):
    members: List[Membership]


# Messages
class SendMessageModel(BaseModel):
    conversation_id: int
    content: str
    attachments: List[Any] = Field(default_factory=list)

    @field_validator("content")
    @classmethod
    def validate_content(cls, content: str) -> str:
        content = content.strip()
        if not content:
            raise ValueError("Message content must not be empty.")
        return content


class SendMessageResponseModel(BaseModel):
    message: Message


class GetMessagesResponseModel(BaseModel):
    messages: List[Message]


# Read state
class MarkReadModel(BaseModel):
    timestamp: Optional[datetime] = None


class MarkReadResponseModel(BaseModel):
    updated: bool


class UnreadCountResponseModel(BaseModel):
    conversation_id: int
    unread: int
