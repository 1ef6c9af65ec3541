"""Conversation and Message SQLModel definitions for the assistant chat.

Models:
- Conversation: one per user, bound to a remote assistant thread
- Message: individual append-only message in a conversation
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Conversation(SQLModel, table=True):
    """
    Conversation entity for the assistant chat.

    Ownership: exactly one conversation per user_id.
    thread_id is the remote assistant thread and never changes once assigned.
    """
    __tablename__ = "conversation"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, unique=True, nullable=False)
    thread_id: str = Field(nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class Message(SQLModel, table=True):
    """
    Message entity for conversations.

    Append-only; ordered by created_at, then id.
    """
    __tablename__ = "message"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", index=True, nullable=False)
    role: MessageRole = Field(default=MessageRole.USER)
    content: str = Field()
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
