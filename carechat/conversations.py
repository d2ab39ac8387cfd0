"""
Conversation Registry.

Direct conversations are unique per unordered user pair. The pair is stored
as a canonical ``direct_key`` under a unique constraint, so two callers that
race to create the same conversation cannot both succeed: the loser's
insert fails, is rolled back, and the winner's row is returned instead.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from carechat.exceptions import Conflict, InvalidArgument, NotFound
from carechat.filters import And, Equals, to_clause
from carechat.messages import MessageLog
from carechat.metrics import record_operation
from carechat.models import Conversation, ConversationParticipant, Message, User
from carechat.participants import ParticipantRegistry
from carechat.unread import UnreadTracker
from carechat.users import missing_user_ids
from carechat.utils import direct_pair_key, utcnow

logger = logging.getLogger(__name__)

CONVERSATION_TYPES = ("direct", "group")


@dataclass
class ConversationSummary:
    """Inbox entry for one conversation as seen by one user."""
    conversation: Conversation
    last_message: Optional[Message]
    unread_count: int
    other_participant: Optional[User] = None
    participant_count: Optional[int] = None


class ConversationRegistry:

    def __init__(self, db: Session, retry_attempts: int = 3) -> None:
        self._db = db
        self._retry_attempts = max(1, retry_attempts)
        self._participants = ParticipantRegistry(db)

    # ------------------------------------------------------------------
    # Direct conversations
    # ------------------------------------------------------------------

    def find_direct(self, user_a: int, user_b: int) -> Optional[Conversation]:
        predicate = And(
            Equals("type", "direct"),
            Equals("direct_key", direct_pair_key(user_a, user_b)),
        )
        return self._db.scalars(select(Conversation).where(to_clause(predicate, Conversation))).first()

    def get_or_create_direct(self, user_a: int, user_b: int) -> Tuple[Conversation, bool]:
        """
        Return the direct conversation shared by two users, creating it (and
        both membership rows) if it does not exist yet.

        Returns:
            Tuple of (conversation, created)
        """
        if user_a == user_b:
            raise InvalidArgument("Cannot start a conversation with yourself")

        key = direct_pair_key(user_a, user_b)
        for attempt in range(1, self._retry_attempts + 1):
            existing = self.find_direct(user_a, user_b)
            if existing is not None:
                record_operation("direct_conversation", "existing" if attempt == 1 else "race_recovered")
                return existing, False

            now = utcnow()
            conversation = Conversation(
                type="direct",
                name=None,
                description=None,
                created_by=None,
                direct_key=key,
                created_at=now,
                updated_at=now,
            )
            try:
                self._db.add(conversation)
                self._db.flush()
                self._participants.add(conversation.id, sorted({user_a, user_b}))
                self._db.commit()
            except IntegrityError:
                self._db.rollback()
                # Foreign key failure, not a lost race
                missing = missing_user_ids(self._db, [user_a, user_b])
                if missing:
                    raise NotFound("User not found", {"user_ids": missing})
                logger.info(f"Direct conversation {key} created concurrently (attempt {attempt}), re-reading")
                continue
            except SQLAlchemyError:
                self._db.rollback()
                raise

            self._db.refresh(conversation)
            logger.info(f"Created direct conversation {conversation.id} for pair {key}")
            record_operation("direct_conversation", "created")
            return conversation, True

        existing = self.find_direct(user_a, user_b)
        if existing is None:
            logger.warning(f"Direct conversation {key} still missing after {self._retry_attempts} attempts")
            raise Conflict("Conversation could not be created, try again", {"user_ids": [user_a, user_b]})
        record_operation("direct_conversation", "race_recovered")
        return existing, False

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(
        self,
        creator_id: int,
        name: str,
        description: Optional[str],
        member_ids: Iterable[int],
    ) -> Conversation:
        """Create a group and its membership rows in one transaction."""
        name = (name or "").strip()
        members = list(dict.fromkeys(member_ids or []))
        if not name:
            raise InvalidArgument("Group name is required")
        if not members:
            raise InvalidArgument("At least one user ID is required")

        missing = missing_user_ids(self._db, members)
        if missing:
            raise NotFound("One or more user IDs do not exist", {"user_ids": missing})

        now = utcnow()
        conversation = Conversation(
            type="group",
            name=name,
            description=(description or "").strip() or None,
            created_by=creator_id,
            direct_key=None,
            created_at=now,
            updated_at=now,
        )
        try:
            self._db.add(conversation)
            self._db.flush()
            self._participants.add(conversation.id, members)
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            missing = missing_user_ids(self._db, members)
            if missing:
                raise NotFound("One or more user IDs do not exist", {"user_ids": missing})
            raise
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(conversation)

        logger.info(f"Created group {conversation.id} '{name}' with {len(members)} members by user {creator_id}")
        record_operation("group", "created")
        return conversation

    def get_group(self, conversation_id: int) -> Conversation:
        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None or conversation.type != "group":
            raise NotFound("Group not found", {"conversation_id": conversation_id})
        return conversation

    def delete_group(self, conversation_id: int) -> None:
        """Delete a group together with its messages and memberships."""
        conversation = self.get_group(conversation_id)
        self._db.execute(delete(Message).where(Message.conversation_id == conversation.id))
        self._participants.remove_all(conversation.id)
        self._db.delete(conversation)
        self._db.commit()

        logger.info(f"Deleted group {conversation_id}")
        record_operation("group", "deleted")

    # ------------------------------------------------------------------
    # Lookup and inbox
    # ------------------------------------------------------------------

    def get(self, conversation_id: int) -> Conversation:
        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found", {"conversation_id": conversation_id})
        return conversation

    def list_for_user(
        self,
        user_id: int,
        type_filter: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ConversationSummary]:
        """User's conversations, most recently active first."""
        if type_filter is not None and type_filter not in CONVERSATION_TYPES:
            raise InvalidArgument(
                "type must be 'direct' or 'group'",
                {"type": type_filter},
            )

        membership = Equals("user_id", user_id)
        kind = And(Equals("type", type_filter) if type_filter else None)
        stmt = (
            select(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .where(
                to_clause(membership, ConversationParticipant),
                to_clause(kind, Conversation),
            )
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .limit(limit)
            .offset(offset)
        )
        conversations = list(self._db.scalars(stmt))

        log = MessageLog(self._db)
        unread = UnreadTracker(self._db)
        summaries = []
        for conversation in conversations:
            summary = ConversationSummary(
                conversation=conversation,
                last_message=log.last_message(conversation.id),
                unread_count=unread.unread_count(conversation.id, user_id),
            )
            if conversation.type == "direct":
                summary.other_participant = self._participants.other_member(conversation.id, user_id)
            else:
                summary.participant_count = self._participants.count(conversation.id)
            summaries.append(summary)

        logger.debug(f"User {user_id}: {len(summaries)} conversations (type={type_filter}, offset={offset})")
        return summaries
