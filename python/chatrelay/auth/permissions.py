"""Grant names and authorization checks.

Grants are plain strings stored on the user row. The first user to sign in
receives every grant; later users start with none and are granted rights by
a user holding users:update.
"""

from collections.abc import Iterable

from chatrelay.errors import ForbiddenError

USERS_VIEW = "users:view"
USERS_CREATE = "users:create"
USERS_DELETE = "users:delete"
USERS_UPDATE = "users:update"
SETTINGS_UPDATE_SYSTEM_PROMPT = "settings:update:system-prompt"
API_KEYS_CREATE_PERSONAL = "api-keys:create:personal"
API_KEYS_CREATE_SHARED = "api-keys:create:shared"

ALL_GRANTS: tuple[str, ...] = (
    USERS_VIEW,
    USERS_CREATE,
    USERS_DELETE,
    USERS_UPDATE,
    SETTINGS_UPDATE_SYSTEM_PROMPT,
    API_KEYS_CREATE_PERSONAL,
    API_KEYS_CREATE_SHARED,
)

KEY_CREATION_GRANTS = frozenset({API_KEYS_CREATE_PERSONAL, API_KEYS_CREATE_SHARED})


def has_grant(grants: Iterable[str], grant: str) -> bool:
    return grant in set(grants)


def require_grant(grants: Iterable[str], grant: str) -> None:
    """Raise ForbiddenError unless grant is present."""
    if not has_grant(grants, grant):
        raise ForbiddenError(message=f"Missing grant: {grant}")


def unknown_grants(grants: Iterable[str]) -> list[str]:
    """Grants not in ALL_GRANTS, in input order."""
    return [g for g in grants if g not in ALL_GRANTS]
