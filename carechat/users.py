"""
Read-only lookups against the user directory.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from carechat.filters import Contains, InSet, Or, to_clause
from carechat.models import User

logger = logging.getLogger(__name__)


def search_users(db: Session, query: str, limit: int = 20) -> List[User]:
    """Case-insensitive substring match on name or email."""
    predicate = Or(Contains("name", query), Contains("email", query))
    stmt = select(User).where(to_clause(predicate, User)).order_by(User.name, User.id).limit(limit)
    users = list(db.scalars(stmt))
    logger.debug(f"User search '{query}' matched {len(users)} users")
    return users


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def get_users(db: Session, user_ids: Iterable[int]) -> List[User]:
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return []
    stmt = select(User).where(to_clause(InSet("id", ids), User)).order_by(User.id)
    return list(db.scalars(stmt))


def missing_user_ids(db: Session, user_ids: Iterable[int]) -> List[int]:
    """Return the requested ids that do not resolve to a user, in request order."""
    ids = list(dict.fromkeys(user_ids))
    found = {user.id for user in get_users(db, ids)}
    return [user_id for user_id in ids if user_id not in found]
