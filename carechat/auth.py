"""
Caller identity and capabilities.

Accounts and token issuance live outside this service. A request carries
``Authorization: Bearer <user_id>.<hmac>``; the identity provider checks
the signature and loads the user row, yielding a ``Caller``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from carechat.exceptions import Forbidden, Unauthenticated
from carechat.storage import get_db
from carechat.utils import parse_user_token

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "Admin"
    DOCTOR = "Doctor"
    NURSE = "Nurse"
    USER = "User"


class Capability(str, Enum):
    MANAGE_GROUPS = "CanManageGroups"
    MODERATE_MESSAGES = "CanModerateMessages"


ROLE_CAPABILITIES = {
    Role.ADMIN: frozenset({Capability.MANAGE_GROUPS, Capability.MODERATE_MESSAGES}),
    Role.DOCTOR: frozenset(),
    Role.NURSE: frozenset(),
    Role.USER: frozenset(),
}


@dataclass(frozen=True)
class Caller:
    id: int
    name: str
    email: str
    role: Role

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    def require(self, capability: Capability) -> None:
        """Raise Forbidden unless the caller holds ``capability``."""
        if not self.can(capability):
            logger.warning(f"User {self.id} ({self.role.value}) lacks {capability.value}")
            raise Forbidden("Admin access required", {"capability": capability.value})


class SignedTokenIdentityProvider:
    """Resolves HMAC-signed bearer tokens against the users table."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def resolve(self, db: Session, token: str) -> Optional[Caller]:
        from carechat.models import User

        user_id = parse_user_token(token, self._secret)
        if user_id is None:
            return None
        user = db.get(User, user_id)
        if user is None:
            logger.info(f"Token subject {user_id} not found")
            return None
        try:
            role = Role(user.role)
        except ValueError:
            logger.warning(f"User {user.id} has unknown role {user.role!r}, treating as User")
            role = Role.USER
        return Caller(id=user.id, name=user.name, email=user.email, role=role)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity_provider(request: Request) -> SignedTokenIdentityProvider:
    return request.app.state.identity_provider


def get_current_caller(
    authorization: Annotated[Optional[str], Header()] = None,
    provider: SignedTokenIdentityProvider = Depends(get_identity_provider),
    db: Session = Depends(get_db),
) -> Caller:
    """Dependency resolving the authenticated caller or failing with 401."""
    token = extract_bearer_token(authorization)
    if token is None:
        raise Unauthenticated("Authorization token required")
    caller = provider.resolve(db, token)
    if caller is None:
        raise Unauthenticated("Invalid or expired token")
    return caller
