"""
Utility functions for the messaging service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def direct_pair_key(user_a: int, user_b: int) -> str:
    """Canonical key for the unordered pair of users in a direct conversation."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


def compute_signature(payload: str, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(payload: str, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        payload: Signed text
        signature: Hex-encoded signature presented by the client
        secret: AUTH_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature: {signature[:8]}...")

    expected_signature = compute_signature(payload, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def sign_user_token(user_id: int, secret: str) -> str:
    """Build a bearer token of the form ``<user_id>.<signature>``."""
    subject = str(user_id)
    return f"{subject}.{compute_signature(subject, secret)}"


def parse_user_token(token: str, secret: str) -> Optional[int]:
    """
    Return the user id carried by a bearer token, or None if the token is
    malformed or its signature does not match.
    """
    subject, sep, signature = token.partition(".")
    if not sep or not signature.isascii() or not (subject.isascii() and subject.isdigit()):
        logger.info("Malformed bearer token")
        return None
    if not verify_hmac_signature(subject, signature, secret):
        logger.info("Invalid bearer token signature")
        return None
    return int(subject)
