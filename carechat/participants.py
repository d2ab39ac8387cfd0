"""
Participant Registry: membership rows and read markers.

Methods here never commit; the calling component owns the transaction.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from carechat.exceptions import Forbidden, NotFound
from carechat.filters import And, Equals, InSet, to_clause
from carechat.models import Conversation, ConversationParticipant, User
from carechat.utils import utcnow

logger = logging.getLogger(__name__)


class ParticipantRegistry:

    def __init__(self, db: Session) -> None:
        self._db = db

    def get(self, conversation_id: int, user_id: int) -> Optional[ConversationParticipant]:
        predicate = And(Equals("conversation_id", conversation_id), Equals("user_id", user_id))
        stmt = select(ConversationParticipant).where(to_clause(predicate, ConversationParticipant))
        return self._db.scalars(stmt).first()

    def require(self, conversation_id: int, user_id: int) -> ConversationParticipant:
        """
        Return the membership row. Raises NotFound if the conversation does
        not exist and Forbidden if the user is not a member.
        """
        participant = self.get(conversation_id, user_id)
        if participant is None:
            if self._db.get(Conversation, conversation_id) is None:
                raise NotFound("Conversation not found", {"conversation_id": conversation_id})
            logger.info(f"User {user_id} is not a participant of conversation {conversation_id}")
            raise Forbidden(
                "Conversation not found or access denied",
                {"conversation_id": conversation_id},
            )
        return participant

    def member_ids(self, conversation_id: int, among: Optional[Iterable[int]] = None) -> set:
        predicate = And(
            Equals("conversation_id", conversation_id),
            InSet("user_id", list(among)) if among is not None else None,
        )
        stmt = select(ConversationParticipant.user_id).where(
            to_clause(predicate, ConversationParticipant)
        )
        return set(self._db.scalars(stmt))

    def count(self, conversation_id: int) -> int:
        stmt = select(func.count(ConversationParticipant.id)).where(
            ConversationParticipant.conversation_id == conversation_id
        )
        return self._db.scalar(stmt) or 0

    def list_with_users(self, conversation_id: int) -> List[Tuple[User, ConversationParticipant]]:
        stmt = (
            select(User, ConversationParticipant)
            .join(ConversationParticipant, ConversationParticipant.user_id == User.id)
            .where(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.joined_at, User.id)
        )
        return [(row[0], row[1]) for row in self._db.execute(stmt)]

    def other_member(self, conversation_id: int, user_id: int) -> Optional[User]:
        stmt = (
            select(User)
            .join(ConversationParticipant, ConversationParticipant.user_id == User.id)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id != user_id,
            )
            .limit(1)
        )
        return self._db.scalars(stmt).first()

    def add(self, conversation_id: int, user_ids: Iterable[int]) -> List[ConversationParticipant]:
        joined_at = utcnow()
        rows = [
            ConversationParticipant(conversation_id=conversation_id, user_id=user_id, joined_at=joined_at)
            for user_id in user_ids
        ]
        self._db.add_all(rows)
        return rows

    def remove(self, conversation_id: int, user_id: int) -> int:
        predicate = And(Equals("conversation_id", conversation_id), Equals("user_id", user_id))
        result = self._db.execute(
            delete(ConversationParticipant).where(to_clause(predicate, ConversationParticipant))
        )
        return result.rowcount or 0

    def remove_all(self, conversation_id: int) -> int:
        result = self._db.execute(
            delete(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id
            )
        )
        return result.rowcount or 0

    def latest_marker(self, conversation_id: int) -> Optional[datetime]:
        """Newest read marker or join time across the conversation's members."""
        stmt = select(
            func.max(ConversationParticipant.last_read_at),
            func.max(ConversationParticipant.joined_at),
        ).where(ConversationParticipant.conversation_id == conversation_id)
        marks = [mark for mark in self._db.execute(stmt).one() if mark is not None]
        return max(marks) if marks else None
