"""
Group Manager: capability-gated group administration.

Each public operation checks ``CanManageGroups`` once, on entry, before any
store access.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from carechat.auth import Caller, Capability
from carechat.conversations import ConversationRegistry
from carechat.exceptions import Conflict, InvalidArgument, NotFound
from carechat.filters import Equals, to_clause
from carechat.metrics import record_operation
from carechat.models import Conversation, User
from carechat.participants import ParticipantRegistry
from carechat.users import get_user, get_users, missing_user_ids

logger = logging.getLogger(__name__)


@dataclass
class GroupListing:
    conversation: Conversation
    participant_count: int
    creator: Optional[User]


class GroupManager:

    def __init__(self, db: Session, retry_attempts: int = 3) -> None:
        self._db = db
        self._retry_attempts = max(1, retry_attempts)
        self._registry = ConversationRegistry(db, retry_attempts=retry_attempts)
        self._participants = ParticipantRegistry(db)

    def create_group(
        self,
        caller: Caller,
        name: str,
        description: Optional[str],
        user_ids: Iterable[int],
    ) -> Conversation:
        caller.require(Capability.MANAGE_GROUPS)
        return self._registry.create_group(caller.id, name, description, user_ids)

    def add_participants(self, conversation_id: int, caller: Caller, user_ids: Iterable[int]) -> List[User]:
        """
        Add users to a group, skipping those already in it.

        Raises Conflict only when every requested user is already a member.
        A batch that loses a duplicate-key race with a concurrent add is
        re-read and retried.
        """
        caller.require(Capability.MANAGE_GROUPS)
        self._registry.get_group(conversation_id)

        requested = list(dict.fromkeys(user_ids or []))
        if not requested:
            raise InvalidArgument("At least one user ID is required")
        missing = missing_user_ids(self._db, requested)
        if missing:
            raise InvalidArgument("One or more user IDs are invalid", {"user_ids": missing})

        for attempt in range(1, self._retry_attempts + 1):
            existing = self._participants.member_ids(conversation_id, among=requested)
            new_ids = [user_id for user_id in requested if user_id not in existing]
            if not new_ids:
                raise Conflict("All users are already in the group", {"user_ids": requested})
            try:
                self._participants.add(conversation_id, new_ids)
                self._db.commit()
            except IntegrityError:
                self._db.rollback()
                # The group or a user may have been deleted since the checks above
                self._registry.get_group(conversation_id)
                missing = missing_user_ids(self._db, requested)
                if missing:
                    raise InvalidArgument("One or more user IDs are invalid", {"user_ids": missing})
                logger.info(f"Concurrent membership change on group {conversation_id} (attempt {attempt}), re-reading")
                continue
            except SQLAlchemyError:
                self._db.rollback()
                raise

            logger.info(f"Added users {new_ids} to group {conversation_id}")
            record_operation("group_membership", "added")
            return get_users(self._db, new_ids)

        raise Conflict("Group membership changed concurrently, try again", {"conversation_id": conversation_id})

    def remove_participant(self, conversation_id: int, caller: Caller, user_id: int) -> None:
        caller.require(Capability.MANAGE_GROUPS)
        self._registry.get_group(conversation_id)

        if self._participants.get(conversation_id, user_id) is None:
            raise NotFound(
                "User is not a participant in this group",
                {"conversation_id": conversation_id, "user_id": user_id},
            )
        self._participants.remove(conversation_id, user_id)
        self._db.commit()

        logger.info(f"Removed user {user_id} from group {conversation_id}")
        record_operation("group_membership", "removed")

    def list_groups(self, caller: Caller, limit: int = 50, offset: int = 0) -> Tuple[List[GroupListing], int]:
        """All groups, newest first, with the total count."""
        caller.require(Capability.MANAGE_GROUPS)

        is_group = to_clause(Equals("type", "group"), Conversation)
        total = self._db.scalar(select(func.count(Conversation.id)).where(is_group)) or 0
        stmt = (
            select(Conversation)
            .where(is_group)
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .limit(limit)
            .offset(offset)
        )
        groups = [
            GroupListing(
                conversation=group,
                participant_count=self._participants.count(group.id),
                creator=get_user(self._db, group.created_by) if group.created_by else None,
            )
            for group in self._db.scalars(stmt)
        ]
        logger.debug(f"Listed {len(groups)} of {total} groups (offset={offset})")
        return groups, total

    def delete_group(self, conversation_id: int, caller: Caller) -> None:
        caller.require(Capability.MANAGE_GROUPS)
        self._registry.delete_group(conversation_id)
