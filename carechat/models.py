"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from carechat.storage import Base
from carechat.utils import utcnow


class User(Base):
    """
    Directory entry for a caller. Accounts are managed elsewhere; this
    service only reads them.

    Table: users
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="Nurse")


class Conversation(Base):
    """
    Direct (1:1) or group conversation.

    Table: conversations
    direct_key holds "<min_user_id>:<max_user_id>" for direct conversations
    and NULL for groups; its unique constraint allows one direct
    conversation per user pair.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    type = Column(String(10), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    direct_key = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class ConversationParticipant(Base):
    """
    Membership row joining a user to a conversation.

    Table: conversation_participants
    Unique: (conversation_id, user_id)
    """
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
    )

    id = Column(Integer, primary_key=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    last_read_at = Column(DateTime, nullable=True)


class Message(Base):
    """
    Message appended to a conversation.

    Table: messages
    The id is the ordering key; AUTOINCREMENT keeps SQLite from reusing ids.
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(10), nullable=False, default="text")
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)
