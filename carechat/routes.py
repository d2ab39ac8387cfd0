"""
Messaging HTTP routes.

Every route resolves the caller through get_current_caller; group
administration is gated inside GroupManager. Handlers are plain functions
so FastAPI runs their blocking store calls in its threadpool.
"""

import logging
from typing import Annotated, Iterable, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from carechat.auth import Caller, get_current_caller
from carechat.config import Settings
from carechat.conversations import ConversationRegistry, ConversationSummary
from carechat.exceptions import InvalidArgument, NotFound
from carechat.groups import GroupManager
from carechat.logging_utils import log_operation_data
from carechat.messages import MessageLog
from carechat.metrics import record_operation
from carechat.models import Conversation, Message, User
from carechat.participants import ParticipantRegistry
from carechat.schemas import (
    AddParticipantsRequest,
    AddParticipantsResponse,
    ConversationDetail,
    ConversationEnvelope,
    ConversationListResponse,
    ConversationSummaryResponse,
    CreateGroupRequest,
    DirectConversationRequest,
    ErrorResponse,
    GroupDetail,
    GroupEnvelope,
    GroupListItem,
    GroupListResponse,
    LastMessagePreview,
    MarkReadResponse,
    MessageEnvelope,
    MessageResponse,
    MessagesListResponse,
    ParticipantResponse,
    SendMessageRequest,
    StatusMessage,
    UnreadCountResponse,
    UserPublic,
    UserSearchResponse,
    UserSummary,
)
from carechat.storage import get_db
from carechat.unread import UnreadTracker
from carechat.users import get_user, get_users, search_users

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid argument"},
    401: {"model": ErrorResponse, "description": "Missing or invalid token"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    404: {"model": ErrorResponse, "description": "Not found"},
}

router = APIRouter(responses=ERROR_RESPONSES)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Response builders
# =============================================================================

def _participant_responses(db: Session, conversation_id: int) -> List[ParticipantResponse]:
    return [
        ParticipantResponse(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            joined_at=participant.joined_at,
            last_read_at=participant.last_read_at,
        )
        for user, participant in ParticipantRegistry(db).list_with_users(conversation_id)
    ]


def _conversation_detail(db: Session, conversation: Conversation) -> ConversationDetail:
    return ConversationDetail(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        participants=_participant_responses(db, conversation.id),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _group_detail(db: Session, group: Conversation) -> GroupDetail:
    creator = get_user(db, group.created_by) if group.created_by else None
    return GroupDetail(
        id=group.id,
        name=group.name,
        description=group.description,
        created_by=UserSummary.model_validate(creator) if creator else None,
        participants=_participant_responses(db, group.id),
        created_at=group.created_at,
        updated_at=group.updated_at,
    )


def _summary_response(summary: ConversationSummary) -> ConversationSummaryResponse:
    conversation = summary.conversation
    last = summary.last_message
    return ConversationSummaryResponse(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        other_participant=UserPublic.model_validate(summary.other_participant) if summary.other_participant else None,
        participant_count=summary.participant_count,
        last_message=LastMessagePreview(
            id=last.id,
            content=last.content,
            sender_id=last.sender_id,
            created_at=last.created_at,
        ) if last else None,
        unread_count=summary.unread_count,
        updated_at=conversation.updated_at,
    )


def _message_response(message: Message, sender: Optional[Union[User, Caller]]) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender=UserSummary.model_validate(sender) if sender else None,
        content=message.content,
        message_type=message.message_type,
        metadata=message.meta,
        created_at=message.created_at,
        updated_at=message.updated_at,
        deleted_at=message.deleted_at,
    )


def _message_responses(db: Session, messages: Iterable[Message]) -> List[MessageResponse]:
    messages = list(messages)
    senders = {user.id: user for user in get_users(db, [m.sender_id for m in messages])}
    return [_message_response(m, senders.get(m.sender_id)) for m in messages]


# =============================================================================
# Users
# =============================================================================

@router.get("/users/search", response_model=UserSearchResponse, tags=["users"])
def search_users_route(
    query: Annotated[Optional[str], Query(description="Substring of name or email")] = None,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> UserSearchResponse:
    """Find users to start a conversation with."""
    if not query or not query.strip():
        raise InvalidArgument("Query parameter is required")
    users = search_users(db, query.strip(), limit=settings.USER_SEARCH_LIMIT)
    logger.info(f"GET /users/search: {len(users)} matches for user {caller.id}")
    return UserSearchResponse(users=[UserPublic.model_validate(u) for u in users])


# =============================================================================
# Conversations
# =============================================================================

@router.post("/conversations/direct", response_model=ConversationEnvelope, tags=["conversations"])
def get_or_create_direct_conversation(
    request: Request,
    body: DirectConversationRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> ConversationEnvelope:
    """Return the caller's direct conversation with another user, creating it on first contact."""
    if body.user_id != caller.id and get_user(db, body.user_id) is None:
        raise NotFound("User not found", {"user_id": body.user_id})

    registry = ConversationRegistry(db, retry_attempts=settings.WRITE_RETRY_ATTEMPTS)
    conversation, created = registry.get_or_create_direct(caller.id, body.user_id)

    log_operation_data(
        request,
        operation="get_or_create_direct",
        result="created" if created else "existing",
        conversation_id=conversation.id,
    )
    return ConversationEnvelope(conversation=_conversation_detail(db, conversation))


@router.get("/conversations", response_model=ConversationListResponse, tags=["conversations"])
def list_conversations(
    conversation_type: Annotated[
        Optional[Literal["direct", "group"]],
        Query(alias="type", description="Only this kind"),
    ] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    """Caller's inbox, most recently active first."""
    summaries = ConversationRegistry(db).list_for_user(
        caller.id, type_filter=conversation_type, limit=limit, offset=offset
    )
    logger.info(f"GET /conversations: returned {len(summaries)} for user {caller.id}")
    return ConversationListResponse(
        conversations=[_summary_response(s) for s in summaries],
        limit=limit,
        offset=offset,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationEnvelope, tags=["conversations"])
def get_conversation(
    conversation_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> ConversationEnvelope:
    conversation = ConversationRegistry(db).get(conversation_id)
    ParticipantRegistry(db).require(conversation_id, caller.id)
    return ConversationEnvelope(conversation=_conversation_detail(db, conversation))


# =============================================================================
# Messages
# =============================================================================

@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    tags=["messages"],
)
def list_messages(
    conversation_id: int,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 50,
    before: Annotated[Optional[int], Query(ge=1, description="Only messages with a smaller id")] = None,
    after: Annotated[Optional[int], Query(ge=0, description="Only messages with a larger id")] = None,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """Page of messages, oldest first."""
    messages, has_more = MessageLog(db).list(
        conversation_id, caller.id, limit=limit, before=before, after=after
    )
    return MessagesListResponse(messages=_message_responses(db, messages), has_more=has_more)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageEnvelope,
    status_code=status.HTTP_201_CREATED,
    tags=["messages"],
)
def send_message(
    request: Request,
    conversation_id: int,
    body: SendMessageRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> MessageEnvelope:
    message = MessageLog(db).append(
        conversation_id,
        caller.id,
        body.content,
        message_type=body.message_type,
        metadata=body.metadata,
    )
    record_operation("message", "sent")
    log_operation_data(
        request,
        operation="send_message",
        result="created",
        conversation_id=conversation_id,
        message_id=message.id,
    )
    return MessageEnvelope(message=_message_response(message, caller))


@router.delete(
    "/conversations/{conversation_id}/messages/{message_id}",
    response_model=MessageEnvelope,
    tags=["messages"],
)
def delete_message(
    request: Request,
    conversation_id: int,
    message_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> MessageEnvelope:
    """Soft-delete a message. Repeating the call is harmless."""
    message = MessageLog(db).soft_delete(message_id, caller, conversation_id=conversation_id)
    record_operation("message", "deleted")
    log_operation_data(
        request,
        operation="delete_message",
        result="deleted",
        conversation_id=conversation_id,
        message_id=message_id,
    )
    return MessageEnvelope(message=_message_responses(db, [message])[0])


# =============================================================================
# Read tracking
# =============================================================================

@router.get(
    "/conversations/{conversation_id}/unread",
    response_model=UnreadCountResponse,
    tags=["conversations"],
)
def get_unread_count(
    conversation_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> UnreadCountResponse:
    ParticipantRegistry(db).require(conversation_id, caller.id)
    count = UnreadTracker(db).unread_count(conversation_id, caller.id)
    return UnreadCountResponse(conversation_id=conversation_id, unread_count=count)


@router.put(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
    tags=["conversations"],
)
def mark_conversation_read(
    request: Request,
    conversation_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    read_at = UnreadTracker(db).mark_read(conversation_id, caller.id)
    record_operation("read_marker", "updated")
    log_operation_data(request, operation="mark_read", conversation_id=conversation_id)
    return MarkReadResponse(last_read_at=read_at)


# =============================================================================
# Groups
# =============================================================================

@router.post(
    "/groups",
    response_model=GroupEnvelope,
    status_code=status.HTTP_201_CREATED,
    tags=["groups"],
)
def create_group(
    request: Request,
    body: CreateGroupRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> GroupEnvelope:
    group = GroupManager(db).create_group(caller, body.name, body.description, body.user_ids)
    log_operation_data(request, operation="create_group", result="created", conversation_id=group.id)
    return GroupEnvelope(group=_group_detail(db, group))


@router.get("/groups", response_model=GroupListResponse, tags=["groups"])
def list_groups(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> GroupListResponse:
    listings, total = GroupManager(db).list_groups(caller, limit=limit, offset=offset)
    groups = [
        GroupListItem(
            id=item.conversation.id,
            name=item.conversation.name,
            description=item.conversation.description,
            participant_count=item.participant_count,
            created_by=UserSummary.model_validate(item.creator) if item.creator else None,
            created_at=item.conversation.created_at,
        )
        for item in listings
    ]
    return GroupListResponse(groups=groups, total=total, limit=limit, offset=offset)


@router.get("/groups/{group_id}", response_model=GroupEnvelope, tags=["groups"])
def get_group(
    group_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> GroupEnvelope:
    group = ConversationRegistry(db).get_group(group_id)
    return GroupEnvelope(group=_group_detail(db, group))


@router.post(
    "/groups/{group_id}/participants",
    response_model=AddParticipantsResponse,
    responses={409: {"model": ErrorResponse, "description": "All users already members"}},
    tags=["groups"],
)
def add_group_participants(
    request: Request,
    group_id: int,
    body: AddParticipantsRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> AddParticipantsResponse:
    manager = GroupManager(db, retry_attempts=settings.WRITE_RETRY_ATTEMPTS)
    added = manager.add_participants(group_id, caller, body.user_ids)
    log_operation_data(request, operation="add_participants", result="added", conversation_id=group_id)
    return AddParticipantsResponse(added_users=[UserSummary.model_validate(u) for u in added])


@router.delete("/groups/{group_id}/participants/{user_id}", response_model=StatusMessage, tags=["groups"])
def remove_group_participant(
    request: Request,
    group_id: int,
    user_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> StatusMessage:
    GroupManager(db).remove_participant(group_id, caller, user_id)
    log_operation_data(request, operation="remove_participant", result="removed", conversation_id=group_id)
    return StatusMessage(message="User removed from group successfully")


@router.delete("/groups/{group_id}", response_model=StatusMessage, tags=["groups"])
def delete_group(
    request: Request,
    group_id: int,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
) -> StatusMessage:
    GroupManager(db).delete_group(group_id, caller)
    log_operation_data(request, operation="delete_group", result="deleted", conversation_id=group_id)
    return StatusMessage(message="Group deleted successfully")
