"""Credential resolution for provider calls.

Fallback chain, first match wins:
1. personal: the user's own credential for the provider
2. shared: another user's credential for the provider with scope=shared
   (oldest first, id as tiebreak)
3. aggregator: an OpenRouter credential, personal then shared; the call is
   routed through OpenRouter with the model id rewritten to "vendor/alias"
4. local: for lmstudio/ollama, the user's stored endpoint URL

Resolution is deterministic for a given set of stored rows and is never
retried. A stored secret that fails to decrypt is logged and skipped.

This module has DB access and is kept outside the LLM adapter layer.
"""

from dataclasses import dataclass
from typing import Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.auth.permissions import KEY_CREATION_GRANTS
from chatrelay.db.models import ApiKey, KeyScope
from chatrelay.errors import NoCredentialError, PolicyViolationError
from chatrelay.logging import get_logger
from chatrelay.services.crypto import CryptoError, decrypt_api_key
from chatrelay.services.model_registry import AGGREGATOR_PROVIDER, LOCAL_PROVIDERS, ModelDescriptor

logger = get_logger(__name__)

CredentialSource = Literal["personal", "shared", "aggregator", "local"]

# OpenRouter serves this one model only under its free-tier id. Narrow,
# possibly stale naming convention; do not generalize.
FREE_TIER_MODEL_KEY = "gemini-2.0-flash-exp"
FREE_TIER_SUFFIX = ":free"


def aggregator_model_id(descriptor: ModelDescriptor) -> str:
    """OpenRouter model id for a catalog model, e.g. "anthropic/claude-sonnet-4"."""
    model_id = f"{descriptor.provider}/{descriptor.aggregator_alias or descriptor.key}"
    if descriptor.key == FREE_TIER_MODEL_KEY:
        model_id += FREE_TIER_SUFFIX
    return model_id


@dataclass(frozen=True)
class ResolvedCredential:
    """Outcome of resolution.

    Attributes:
        provider: Provider to call (differs from the requested one for aggregator routes)
        requested_provider: Provider that owns the model
        source: Which step of the chain matched
        secret: Decrypted key, None for local endpoints
        base_url: Endpoint root for local providers
        credential_id: Row id of the credential used
    """

    provider: str
    requested_provider: str
    source: CredentialSource
    secret: str | None = None
    base_url: str | None = None
    credential_id: str | None = None

    @property
    def via_aggregator(self) -> bool:
        return self.source == "aggregator"

    @property
    def is_direct(self) -> bool:
        """A credential for the model's own vendor, personal or shared."""
        return self.source in ("personal", "shared")

    def model_name_for(self, descriptor: ModelDescriptor) -> str:
        if self.via_aggregator:
            return aggregator_model_id(descriptor)
        return descriptor.key


def _decrypt(row: ApiKey) -> str | None:
    if row.encrypted_key is None or row.key_nonce is None:
        return None
    try:
        return decrypt_api_key(row.encrypted_key, row.key_nonce, row.master_key_version or 1)
    except CryptoError as e:
        logger.warning(
            "credential_decrypt_failed",
            credential_id=row.id,
            provider=row.provider,
            error=str(e),
        )
        return None


def _own_row(db: Session, user_id: str, provider: str) -> ApiKey | None:
    return db.scalar(select(ApiKey).where(ApiKey.user_id == user_id, ApiKey.provider == provider))


def _shared_rows(db: Session, user_id: str, provider: str) -> list[ApiKey]:
    return list(
        db.scalars(
            select(ApiKey)
            .where(
                ApiKey.provider == provider,
                ApiKey.scope == KeyScope.shared,
                ApiKey.user_id != user_id,
                ApiKey.encrypted_key.is_not(None),
            )
            .order_by(ApiKey.created_at, ApiKey.id)
        )
    )


def _secret_for(
    db: Session, user_id: str, provider: str
) -> tuple[str, ApiKey, Literal["personal", "shared"]] | None:
    """First decryptable personal, then shared, secret for a provider."""
    own = _own_row(db, user_id, provider)
    if own is not None:
        secret = _decrypt(own)
        if secret:
            return secret, own, "personal"
    for row in _shared_rows(db, user_id, provider):
        secret = _decrypt(row)
        if secret:
            return secret, row, "shared"
    return None


def resolve_credential(
    db: Session,
    user_id: str,
    provider: str,
    *,
    allow_aggregator: bool = True,
) -> ResolvedCredential:
    """Resolve the credential to use for a provider call.

    Args:
        allow_aggregator: False when the model has no aggregator alias.

    Raises:
        NoCredentialError: If no step of the chain matches.
    """
    if provider in LOCAL_PROVIDERS:
        own = _own_row(db, user_id, provider)
        if own is not None and own.url:
            return ResolvedCredential(
                provider=provider,
                requested_provider=provider,
                source="local",
                base_url=own.url,
                credential_id=own.id,
            )
        raise NoCredentialError(provider)

    found = _secret_for(db, user_id, provider)
    if found is not None:
        secret, row, source = found
        return ResolvedCredential(
            provider=provider,
            requested_provider=provider,
            source=source,
            secret=secret,
            credential_id=row.id,
        )

    if allow_aggregator and provider != AGGREGATOR_PROVIDER:
        found = _secret_for(db, user_id, AGGREGATOR_PROVIDER)
        if found is not None:
            secret, row, _ = found
            return ResolvedCredential(
                provider=AGGREGATOR_PROVIDER,
                requested_provider=provider,
                source="aggregator",
                secret=secret,
                credential_id=row.id,
            )

    raise NoCredentialError(provider)


def get_local_endpoints(db: Session, user_id: str) -> dict[str, str]:
    """The user's configured local server URLs, keyed by provider."""
    rows = db.scalars(
        select(ApiKey).where(
            ApiKey.user_id == user_id,
            ApiKey.provider.in_(LOCAL_PROVIDERS),
            ApiKey.url.is_not(None),
        )
    )
    return {row.provider: row.url for row in rows}


def get_available_providers(db: Session, user_id: str) -> list[str]:
    """Providers the user can call: own credentials plus shared ones."""
    own = db.scalars(select(ApiKey.provider).where(ApiKey.user_id == user_id))
    shared = db.scalars(
        select(ApiKey.provider).where(
            ApiKey.scope == KeyScope.shared, ApiKey.encrypted_key.is_not(None)
        )
    )
    return sorted(set(own) | set(shared))


def has_shared_api_keys(db: Session) -> bool:
    return db.scalar(select(ApiKey.id).where(ApiKey.scope == KeyScope.shared).limit(1)) is not None


def validate_api_key_access(db: Session, grants: list[str]) -> None:
    """Reject granting an account no way to reach a provider.

    A user without any key-creation grant can only chat through shared
    credentials, so at least one must exist.

    Raises:
        PolicyViolationError: If no key-creation grant and no shared credential.
    """
    if KEY_CREATION_GRANTS & set(grants):
        return
    if not has_shared_api_keys(db):
        raise PolicyViolationError(
            "Users without API key grants require at least one shared API key in the system"
        )
