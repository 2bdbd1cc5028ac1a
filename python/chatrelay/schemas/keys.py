"""Credential and model catalog Pydantic schemas.

Security invariants:
- No secrets ever leave the backend
- Responses never include encrypted_key, key_nonce, master_key_version
- Fingerprint is the last 4 chars of the original key
"""

from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, Field

from chatrelay.schemas.base import CamelModel

# Providers that take a secret; the local ones take an endpoint URL instead
SECRET_PROVIDERS = frozenset({"openai", "anthropic", "google", "openrouter"})
URL_PROVIDERS = frozenset({"lmstudio", "ollama"})

KeyScopeValue = Literal["personal", "shared"]


# =============================================================================
# Credentials
# =============================================================================


class ApiKeyOut(CamelModel):
    """A stored credential as shown to its owner.

    has_api_key is True when a secret is stored; the secret itself is never
    returned.
    """

    id: str
    provider: str
    scope: KeyScopeValue
    url: str | None = None
    has_api_key: bool
    key_fingerprint: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SaveApiKeyRequest(CamelModel):
    """Body of PUT /api/keys/{provider}. Upsert by (user, provider)."""

    api_key: str = Field(..., description="The plaintext API key to store")
    scope: KeyScopeValue = "personal"


class SaveApiUrlRequest(CamelModel):
    """Body of PUT /api/keys/{provider}/url for local servers."""

    url: str = Field(..., description="Base URL of the LM Studio / Ollama server")


class UpdateScopeRequest(CamelModel):
    scope: KeyScopeValue


# =============================================================================
# Models
# =============================================================================


class AvailableModelsOut(CamelModel):
    """Response of GET /api/models/available."""

    models: list[dict]
    local_models: list[dict]
