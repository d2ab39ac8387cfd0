"""
Message Log: append-only messages per conversation.

Message ids are the only ordering key. Pages are cut by id cursors:

- neither cursor: the newest ``limit`` messages
- ``before``: the ``limit`` messages immediately older than the cursor
- ``after``: the ``limit`` messages immediately newer than the cursor
- both: the window strictly between, read forward from ``after``

Every page is returned oldest-first, and ``has_more`` is true when the page
came back full. Soft-deleted messages never appear.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from carechat.auth import Caller, Capability
from carechat.exceptions import Forbidden, InvalidArgument, NotFound
from carechat.filters import And, Equals, Range, to_clause
from carechat.models import Conversation, Message
from carechat.participants import ParticipantRegistry
from carechat.utils import utcnow

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "file", "image")


class MessageLog:

    def __init__(self, db: Session) -> None:
        self._db = db
        self._participants = ParticipantRegistry(db)

    def append(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        message_type: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """
        Store a message and bump the conversation's updated_at in one
        transaction.
        """
        text = (content or "").strip()
        if not text:
            raise InvalidArgument("Message content is required")
        if message_type not in MESSAGE_TYPES:
            raise InvalidArgument(
                f"messageType must be one of {', '.join(MESSAGE_TYPES)}",
                {"message_type": message_type},
            )
        self._participants.require(conversation_id, sender_id)

        now = utcnow()
        # Must sort after any read marker already set, even within one clock tick
        marker = self._participants.latest_marker(conversation_id)
        if marker is not None and now <= marker:
            now = marker + timedelta(microseconds=1)

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=text,
            message_type=message_type,
            meta=metadata,
            created_at=now,
            updated_at=now,
        )
        self._db.add(message)
        self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(updated_at=now)
        )
        self._db.commit()
        self._db.refresh(message)
        logger.info(f"Message {message.id} appended to conversation {conversation_id} by user {sender_id}")
        return message

    def list(
        self,
        conversation_id: int,
        requester_id: int,
        limit: int = 50,
        before: Optional[int] = None,
        after: Optional[int] = None,
    ) -> Tuple[List[Message], bool]:
        if limit < 1:
            raise InvalidArgument("limit must be at least 1")
        self._participants.require(conversation_id, requester_id)

        predicate = And(
            Equals("conversation_id", conversation_id),
            Equals("deleted_at", None),
            Range("id", gt=after, lt=before),
        )
        stmt = select(Message).where(to_clause(predicate, Message))
        if after is not None:
            stmt = stmt.order_by(Message.id.asc()).limit(limit)
            messages = list(self._db.scalars(stmt))
        else:
            stmt = stmt.order_by(Message.id.desc()).limit(limit)
            messages = list(reversed(list(self._db.scalars(stmt))))

        logger.debug(
            f"Conversation {conversation_id}: {len(messages)} messages "
            f"(limit={limit}, before={before}, after={after})"
        )
        return messages, len(messages) == limit

    def last_message(self, conversation_id: int) -> Optional[Message]:
        predicate = And(Equals("conversation_id", conversation_id), Equals("deleted_at", None))
        stmt = select(Message).where(to_clause(predicate, Message)).order_by(Message.id.desc()).limit(1)
        return self._db.scalars(stmt).first()

    def soft_delete(
        self,
        message_id: int,
        requester: Caller,
        conversation_id: Optional[int] = None,
    ) -> Message:
        """
        Mark a message deleted. Only the sender or a moderator may do so;
        deleting an already-deleted message succeeds without change.
        """
        message = self._db.get(Message, message_id)
        if message is None or (conversation_id is not None and message.conversation_id != conversation_id):
            raise NotFound("Message not found", {"message_id": message_id})
        if message.sender_id != requester.id and not requester.can(Capability.MODERATE_MESSAGES):
            raise Forbidden("Only the sender can delete this message", {"message_id": message_id})

        if message.deleted_at is not None:
            logger.info(f"Message {message_id} already deleted")
            return message

        message.deleted_at = utcnow()
        self._db.commit()
        self._db.refresh(message)
        logger.info(f"Message {message_id} soft-deleted by user {requester.id}")
        return message
