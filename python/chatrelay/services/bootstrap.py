"""User bootstrap service.

Creates the user row on first authenticated request. The very first user of
an installation receives every grant; everyone after starts with none.
"""

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatrelay.auth.permissions import ALL_GRANTS
from chatrelay.db.models import User
from chatrelay.db.session import get_session_factory

logger = logging.getLogger(__name__)

USERNAME_CLAIMS = ("preferred_username", "username", "email")


def _username_from_claims(claims: dict[str, Any]) -> str:
    for claim in USERNAME_CLAIMS:
        value = claims.get(claim)
        if isinstance(value, str) and value.strip():
            return value.strip()[:255]
    return claims["sub"]


def _claim_invited_user(db: Session, user_id: str, username: str) -> list[str] | None:
    """Adopt an unclaimed account created for this username, rebinding its id.

    Returns the adopted grants, or None when no such account exists. The
    ``claimed`` guard on the UPDATE keeps two concurrent sign-ins from both
    adopting the row.
    """
    invited_id = db.scalar(
        select(User.id).where(User.username == username, User.claimed.is_(False))
    )
    if invited_id is None:
        return None

    result = db.execute(
        update(User)
        .where(User.id == invited_id, User.claimed.is_(False))
        .values(id=user_id, claimed=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return None
    db.commit()

    user = db.get(User, user_id)
    logger.info("Claimed invited user %s as %s", invited_id, user_id)
    return list(user.grants or [])


def ensure_user(db: Session, claims: dict[str, Any]) -> list[str]:
    """Ensure a user row exists for the token subject and return its grants.

    A subject without a row first adopts an unclaimed account whose username
    matches its claims; otherwise a new row is created.

    Race-safe: if a concurrent request inserted the row first, the insert's
    IntegrityError is rolled back and the existing row is read.

    Args:
        db: Database session.
        claims: Verified token claims; ``sub`` is the user id.

    Returns:
        The user's current grants.
    """
    user_id = claims["sub"]
    user = db.get(User, user_id)
    if user is not None:
        return list(user.grants or [])

    username = _username_from_claims(claims)
    grants = _claim_invited_user(db, user_id, username)
    if grants is not None:
        return grants

    if db.scalar(select(User.id).where(User.username == username)) is not None:
        username = user_id

    is_first = (db.scalar(select(func.count()).select_from(User)) or 0) == 0
    grants = list(ALL_GRANTS) if is_first else []

    try:
        db.add(User(id=user_id, username=username, grants=grants))
        db.commit()
    except IntegrityError:
        db.rollback()
        user = db.get(User, user_id)
        if user is None:
            logger.error("Failed to find user after race recovery for %s", user_id)
            raise RuntimeError(f"Failed to bootstrap user {user_id}") from None
        return list(user.grants or [])

    logger.info("Created user %s (first user: %s)", user_id, is_first)
    return grants


def create_bootstrap_callback():
    """Bootstrap callback for AuthMiddleware.

    Each call opens a fresh session, runs the bootstrap, and closes it.
    """

    def bootstrap(claims: dict[str, Any]) -> list[str]:
        db = get_session_factory()()
        try:
            return ensure_user(db, claims)
        finally:
            db.close()

    return bootstrap
