"""Provider credential management.

Handles the credentials a user stores for provider calls:
- List the user's credentials (safe fields only)
- Upsert a secret for a hosted provider, encrypted at rest
- Upsert an endpoint URL for a local server
- Change a credential's scope (personal / shared)
- Delete a credential

Security invariants:
- Plaintext keys never persist beyond request scope
- Never log plaintext keys
- encrypted_key, key_nonce, master_key_version never returned to clients

Grant rules:
- Storing or re-scoping to personal requires api-keys:create:personal
- Storing or re-scoping to shared requires api-keys:create:shared
"""

from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.auth.permissions import (
    API_KEYS_CREATE_PERSONAL,
    API_KEYS_CREATE_SHARED,
    require_grant,
)
from chatrelay.db.models import ApiKey, KeyScope, utcnow
from chatrelay.db.session import transaction
from chatrelay.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from chatrelay.logging import get_logger
from chatrelay.schemas.keys import SECRET_PROVIDERS, URL_PROVIDERS, ApiKeyOut
from chatrelay.services.crypto import encrypt_api_key
from chatrelay.services.local_models import normalize_base_url

logger = get_logger(__name__)

_SCOPE_GRANTS = {
    KeyScope.personal: API_KEYS_CREATE_PERSONAL,
    KeyScope.shared: API_KEYS_CREATE_SHARED,
}


def _to_out(row: ApiKey) -> ApiKeyOut:
    return ApiKeyOut(
        id=row.id,
        provider=row.provider,
        scope=row.scope.value,
        url=row.url,
        has_api_key=row.encrypted_key is not None,
        key_fingerprint=row.key_fingerprint,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _require_scope_grant(grants: list[str], scope: KeyScope) -> None:
    require_grant(grants, _SCOPE_GRANTS[scope])


def _get_row(db: Session, user_id: str, provider: str) -> ApiKey | None:
    return db.scalar(select(ApiKey).where(ApiKey.user_id == user_id, ApiKey.provider == provider))


def list_api_keys(db: Session, user_id: str) -> list[ApiKeyOut]:
    """List the user's credentials, oldest first. Never includes secrets."""
    rows = db.scalars(
        select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at, ApiKey.id)
    )
    return [_to_out(row) for row in rows]


def save_api_key(
    db: Session,
    user_id: str,
    grants: list[str],
    provider: str,
    api_key: str,
    scope: str = "personal",
) -> tuple[ApiKeyOut, bool]:
    """Add or replace the secret for a hosted provider.

    Upsert by (user_id, provider). A row holding only a URL cannot exist for
    these providers, so an existing row is always overwritten in place.

    Returns:
        Tuple of (ApiKeyOut, is_created).

    Raises:
        ApiError: E_INVALID_PROVIDER if provider takes no secret.
        InvalidRequestError: If the key is blank.
        ForbiddenError: If the viewer lacks the grant for the scope.
    """
    provider = provider.lower()
    if provider not in SECRET_PROVIDERS:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_PROVIDER,
            f"Unknown provider: {provider}. Must be one of: {', '.join(sorted(SECRET_PROVIDERS))}",
        )

    api_key = api_key.strip()
    if not api_key:
        raise InvalidRequestError(message="API key is required")

    key_scope = KeyScope(scope)
    _require_scope_grant(grants, key_scope)

    ciphertext, nonce, version, fingerprint = encrypt_api_key(api_key)

    existing = _get_row(db, user_id, provider)
    with transaction(db):
        if existing is not None:
            row = existing
            row.updated_at = utcnow()
        else:
            row = ApiKey(user_id=user_id, provider=provider)
            db.add(row)
        row.encrypted_key = ciphertext
        row.key_nonce = nonce
        row.master_key_version = version
        row.key_fingerprint = fingerprint
        row.scope = key_scope

    logger.info(
        "user_key_updated" if existing is not None else "user_key_created",
        provider=provider,
        scope=key_scope.value,
        fingerprint=fingerprint,
    )
    return _to_out(row), existing is None


def _validate_url(url: str) -> str:
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_URL, f"Invalid URL: {url}")
    return url


def save_api_url(
    db: Session,
    user_id: str,
    grants: list[str],
    provider: str,
    url: str,
) -> tuple[ApiKeyOut, bool]:
    """Add or replace the endpoint URL of a local LM Studio / Ollama server.

    The URL is stored with the dialect's API suffix stripped.

    Raises:
        ApiError: E_INVALID_PROVIDER if provider is not a local server.
        ApiError: E_INVALID_URL if url is not an absolute http(s) URL.
        ForbiddenError: Without api-keys:create:personal.
    """
    provider = provider.lower()
    if provider not in URL_PROVIDERS:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_PROVIDER,
            f"Unknown provider: {provider}. Must be one of: {', '.join(sorted(URL_PROVIDERS))}",
        )
    base_url = normalize_base_url(provider, _validate_url(url))
    _require_scope_grant(grants, KeyScope.personal)

    existing = _get_row(db, user_id, provider)
    with transaction(db):
        if existing is not None:
            row = existing
            row.updated_at = utcnow()
        else:
            row = ApiKey(user_id=user_id, provider=provider, scope=KeyScope.personal)
            db.add(row)
        row.url = base_url

    logger.info(
        "user_endpoint_updated" if existing is not None else "user_endpoint_created",
        provider=provider,
    )
    return _to_out(row), existing is None


def update_api_key_scope(
    db: Session, user_id: str, grants: list[str], provider: str, scope: str
) -> ApiKeyOut:
    """Move a stored secret between personal and shared.

    Local endpoints are always personal.

    Raises:
        NotFoundError: E_KEY_NOT_FOUND if the user has no credential for provider.
        InvalidRequestError: If the credential is a local endpoint.
        ForbiddenError: If the viewer lacks the grant for the target scope.
    """
    row = _get_row(db, user_id, provider.lower())
    if row is None:
        raise NotFoundError(ApiErrorCode.E_KEY_NOT_FOUND, "API key not found")
    if row.encrypted_key is None:
        raise InvalidRequestError(message="Only API keys can be shared")

    key_scope = KeyScope(scope)
    _require_scope_grant(grants, key_scope)

    with transaction(db):
        row.scope = key_scope
        row.updated_at = utcnow()

    logger.info("user_key_scope_updated", provider=row.provider, scope=key_scope.value)
    return _to_out(row)


def delete_api_key(db: Session, user_id: str, provider: str) -> None:
    """Delete the user's credential for a provider.

    Raises:
        NotFoundError: E_KEY_NOT_FOUND if there is none.
    """
    row = _get_row(db, user_id, provider.lower())
    if row is None:
        raise NotFoundError(ApiErrorCode.E_KEY_NOT_FOUND, "API key not found")

    with transaction(db):
        db.delete(row)

    logger.info("user_key_deleted", provider=row.provider)
