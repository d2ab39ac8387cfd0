"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

JSON keys are camelCase on the wire; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


# Timestamps are stored as naive UTC; emit them with an explicit Z suffix
UtcDatetime = Annotated[
    datetime,
    PlainSerializer(lambda v: v.isoformat() + "Z", return_type=str, when_used="json"),
]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class DirectConversationRequest(CamelModel):
    """Body of POST /conversations/direct."""
    user_id: int = Field(..., description="The other participant")


class SendMessageRequest(CamelModel):
    """
    Body of POST /conversations/{id}/messages.

    Blank content is rejected by the message log (400), not here.
    """
    content: str = Field(..., max_length=10000, description="Message text")
    message_type: Literal["text", "file", "image"] = Field(
        default="text",
        description="Kind of message"
    )
    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Structured payload, e.g. file name and URL"
    )


class CreateGroupRequest(CamelModel):
    """Body of POST /groups."""
    name: str = Field(default="", max_length=255, description="Group name")
    description: Optional[str] = Field(default=None, description="Group description")
    user_ids: List[int] = Field(default_factory=list, description="Initial members")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"name": "Night shift", "description": "Ward 3 nurses", "userIds": [2, 3, 4]}
            ]
        }
    )


class AddParticipantsRequest(CamelModel):
    """Body of POST /groups/{id}/participants."""
    user_ids: List[int] = Field(default_factory=list, description="Users to add")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Machine-readable error kind")
    detail: str = Field(..., description="Error description")


class StatusMessage(CamelModel):
    message: str


class UserSummary(CamelModel):
    id: int
    name: str
    email: str


class UserPublic(UserSummary):
    role: str


class UserSearchResponse(CamelModel):
    users: List[UserPublic] = Field(default_factory=list)


class ParticipantResponse(UserPublic):
    joined_at: UtcDatetime
    last_read_at: Optional[UtcDatetime] = None


class ConversationDetail(CamelModel):
    id: int
    type: str
    name: Optional[str] = None
    description: Optional[str] = None
    participants: List[ParticipantResponse] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime


class ConversationEnvelope(CamelModel):
    conversation: ConversationDetail


class LastMessagePreview(CamelModel):
    id: int
    content: str
    sender_id: int
    created_at: UtcDatetime


class ConversationSummaryResponse(CamelModel):
    """
    Inbox entry. Direct conversations carry ``otherParticipant``; groups
    carry ``name``, ``description`` and ``participantCount``.
    """
    id: int
    type: str
    name: Optional[str] = None
    description: Optional[str] = None
    other_participant: Optional[UserPublic] = None
    participant_count: Optional[int] = None
    last_message: Optional[LastMessagePreview] = None
    unread_count: int = Field(..., ge=0)
    updated_at: UtcDatetime


class ConversationListResponse(CamelModel):
    conversations: List[ConversationSummaryResponse] = Field(default_factory=list)
    limit: int
    offset: int


class MessageResponse(CamelModel):
    id: int
    conversation_id: int
    sender: Optional[UserSummary] = None
    content: str
    message_type: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    deleted_at: Optional[UtcDatetime] = None


class MessageEnvelope(CamelModel):
    message: MessageResponse


class MessagesListResponse(CamelModel):
    """Page of messages, oldest first."""
    messages: List[MessageResponse] = Field(default_factory=list)
    has_more: bool


class MarkReadResponse(CamelModel):
    message: str = "Conversation marked as read"
    last_read_at: UtcDatetime


class UnreadCountResponse(CamelModel):
    conversation_id: int
    unread_count: int = Field(..., ge=0)


class GroupDetail(CamelModel):
    id: int
    type: str = "group"
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[UserSummary] = None
    participants: List[ParticipantResponse] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime


class GroupEnvelope(CamelModel):
    group: GroupDetail


class AddParticipantsResponse(CamelModel):
    message: str = "Users added successfully"
    added_users: List[UserSummary] = Field(default_factory=list)


class GroupListItem(CamelModel):
    id: int
    name: Optional[str] = None
    description: Optional[str] = None
    participant_count: int = Field(..., ge=0)
    created_by: Optional[UserSummary] = None
    created_at: UtcDatetime


class GroupListResponse(CamelModel):
    groups: List[GroupListItem] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int
    offset: int


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
