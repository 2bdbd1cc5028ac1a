"""User administration and profile settings.

Admin operations are gated by grants held by the acting viewer:
- users:view lists accounts
- users:create creates accounts
- users:update replaces another account's grants
- users:delete deletes another account

Creating an account or changing its grants runs the access-policy guard:
an account without key-creation grants is only allowed when a shared
credential exists.
"""

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from chatrelay.auth.permissions import (
    SETTINGS_UPDATE_SYSTEM_PROMPT,
    USERS_CREATE,
    USERS_DELETE,
    USERS_UPDATE,
    USERS_VIEW,
    require_grant,
    unknown_grants,
)
from chatrelay.background import BackgroundRunner
from chatrelay.db.models import Attachment, User
from chatrelay.db.session import transaction
from chatrelay.errors import (
    ApiError,
    ApiErrorCode,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
)
from chatrelay.logging import get_logger
from chatrelay.schemas.users import UserOut
from chatrelay.services.api_key_resolver import validate_api_key_access
from chatrelay.services.attachments import schedule_blob_cleanup
from chatrelay.storage.client import StorageClientBase

logger = get_logger(__name__)


def _validate_grants(grants: list[str]) -> list[str]:
    unknown = unknown_grants(grants)
    if unknown:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_GRANT, f"Unknown grants: {', '.join(unknown)}"
        )
    return list(dict.fromkeys(grants))


def _get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(ApiErrorCode.E_USER_NOT_FOUND, "User not found")
    return user


def list_users(db: Session, viewer_grants: list[str]) -> list[UserOut]:
    require_grant(viewer_grants, USERS_VIEW)
    users = db.scalars(select(User).order_by(User.created_at, User.id))
    return [UserOut.model_validate(u) for u in users]


def create_user(
    db: Session,
    viewer_grants: list[str],
    username: str,
    grants: list[str],
    user_id: str | None = None,
) -> UserOut:
    """Create an account ahead of its first sign-in.

    Raises:
        ForbiddenError: Without users:create.
        ApiError: E_INVALID_GRANT for unknown grants.
        PolicyViolationError: Account would have no way to reach a provider.
        ApiError: E_USERNAME_TAKEN if the username or id already exists.
    """
    require_grant(viewer_grants, USERS_CREATE)
    grants = _validate_grants(grants)
    validate_api_key_access(db, grants)

    clauses = [User.username == username]
    if user_id:
        clauses.append(User.id == user_id)
    if db.scalar(select(User.id).where(or_(*clauses)).limit(1)) is not None:
        raise ApiError(ApiErrorCode.E_USERNAME_TAKEN, "Username or id already exists")

    # Without an explicit id the row waits for a sign-in carrying this username.
    user = User(username=username, grants=grants, claimed=bool(user_id))
    if user_id:
        user.id = user_id
    with transaction(db):
        db.add(user)

    logger.info("user_created", created_user_id=user.id, grant_count=len(grants))
    return UserOut.model_validate(user)


def update_user_grants(
    db: Session, viewer_id: str, viewer_grants: list[str], user_id: str, grants: list[str]
) -> UserOut:
    """Replace another account's grants.

    Raises:
        ForbiddenError: Without users:update, or when targeting oneself.
        NotFoundError: E_USER_NOT_FOUND.
        ApiError: E_INVALID_GRANT for unknown grants.
        PolicyViolationError: Account would have no way to reach a provider.
    """
    require_grant(viewer_grants, USERS_UPDATE)
    if user_id == viewer_id:
        raise ForbiddenError(message="Cannot change your own grants")

    user = _get_user(db, user_id)
    grants = _validate_grants(grants)
    validate_api_key_access(db, grants)

    with transaction(db):
        user.grants = grants

    logger.info("user_grants_updated", target_user_id=user_id, grant_count=len(grants))
    return UserOut.model_validate(user)


def delete_user(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    viewer_id: str,
    viewer_grants: list[str],
    user_id: str,
) -> None:
    """Delete another account with its chats, credentials and attachments.

    Raises:
        ForbiddenError: Without users:delete, or when targeting oneself.
        NotFoundError: E_USER_NOT_FOUND.
    """
    require_grant(viewer_grants, USERS_DELETE)
    if user_id == viewer_id:
        raise ForbiddenError(message="Cannot delete your own account")

    user = _get_user(db, user_id)
    paths = list(db.scalars(select(Attachment.file_path).where(Attachment.user_id == user_id)))

    with transaction(db):
        db.delete(user)

    logger.info("user_deleted", target_user_id=user_id, attachment_count=len(paths))
    schedule_blob_cleanup(runner, storage, paths)


def get_me(db: Session, viewer_id: str) -> UserOut:
    return UserOut.model_validate(_get_user(db, viewer_id))


def update_me(
    db: Session,
    viewer_id: str,
    viewer_grants: list[str],
    *,
    language: str | None = None,
    default_system_prompt: str | None = None,
    fields_set: set[str] | frozenset[str] = frozenset(),
) -> UserOut:
    """Update the viewer's own settings.

    Only names in fields_set are written, so a field can be cleared with
    an explicit null. A blank system prompt is stored as null.

    Raises:
        ForbiddenError: Changing the system prompt without its grant.
    """
    user = _get_user(db, viewer_id)
    if "default_system_prompt" in fields_set:
        require_grant(viewer_grants, SETTINGS_UPDATE_SYSTEM_PROMPT)

    with transaction(db):
        if "language" in fields_set:
            user.language = language
        if "default_system_prompt" in fields_set:
            prompt = (default_system_prompt or "").strip()
            user.default_system_prompt = prompt or None

    logger.info("user_settings_updated", fields=sorted(fields_set))
    return UserOut.model_validate(user)
