"""
Unread Tracker.

A participant's unread count is the number of non-deleted messages created
strictly after their read marker (``last_read_at``, falling back to
``joined_at``). The participant's own messages are counted too.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from carechat.filters import And, Equals, Range, to_clause
from carechat.models import Message
from carechat.participants import ParticipantRegistry
from carechat.utils import utcnow

logger = logging.getLogger(__name__)


class UnreadTracker:

    def __init__(self, db: Session) -> None:
        self._db = db
        self._participants = ParticipantRegistry(db)

    def unread_count(self, conversation_id: int, user_id: int) -> int:
        participant = self._participants.get(conversation_id, user_id)
        if participant is None:
            return 0
        since = participant.last_read_at or participant.joined_at
        predicate = And(
            Equals("conversation_id", conversation_id),
            Equals("deleted_at", None),
            Range("created_at", gt=since),
        )
        stmt = select(func.count(Message.id)).where(to_clause(predicate, Message))
        return self._db.scalar(stmt) or 0

    def mark_read(self, conversation_id: int, user_id: int) -> datetime:
        """
        Move the caller's read marker to now.

        The marker is overwritten unconditionally, so a call carrying an
        earlier clock can move it backward.
        """
        participant = self._participants.require(conversation_id, user_id)
        read_at = utcnow()
        participant.last_read_at = read_at
        self._db.commit()
        logger.info(f"User {user_id} marked conversation {conversation_id} read at {read_at.isoformat()}")
        return read_at
