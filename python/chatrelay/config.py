"""Application settings loaded from environment variables.

Environment Configuration:
    CHATRELAY_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)

Auth Configuration:
    AUTH_JWT_SECRET: Shared HS256 secret for bearer tokens (required in staging/prod)
    AUTH_JWT_ISSUER: Expected JWT issuer (trailing slash stripped)
    AUTH_JWT_AUDIENCES: Comma-separated list of allowed audiences

Credential Encryption:
    CHATRELAY_KEY_ENCRYPTION_KEY: Base64-encoded 32-byte SecretBox key for stored
        provider keys (required in staging/prod)

Storage:
    UPLOAD_DIR: Root directory for attachment blobs (default "uploads")
    MAX_UPLOAD_BYTES: Per-file upload ceiling

Providers:
    OPENROUTER_APP_URL / OPENROUTER_APP_NAME: Attribution headers sent to OpenRouter
    LLM_TIMEOUT_S: Per-request provider timeout
    LLM_MAX_OUTPUT_TOKENS: Output ceiling for chat replies
    THINKING_BUDGET_TOKENS: Fixed reasoning budget for thinking-capable models
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - AUTH_JWT_SECRET and CHATRELAY_KEY_ENCRYPTION_KEY are required in staging and prod
    """

    chatrelay_env: Environment = Field(default=Environment.LOCAL, alias="CHATRELAY_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Bearer token verification
    auth_jwt_secret: str | None = Field(default=None, alias="AUTH_JWT_SECRET")
    auth_jwt_issuer: str = Field(default="chatrelay", alias="AUTH_JWT_ISSUER")
    auth_jwt_audiences: str = Field(default="chatrelay", alias="AUTH_JWT_AUDIENCES")

    # Base64-encoded 32-byte key for XSalsa20-Poly1305 (SecretBox)
    chatrelay_key_encryption_key: str | None = Field(
        default=None, alias="CHATRELAY_KEY_ENCRYPTION_KEY"
    )

    # Attachment storage
    upload_dir: str = Field(default="uploads", alias="UPLOAD_DIR")
    max_upload_bytes: int = Field(default=25 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")  # 25 MB

    # Provider calls
    openrouter_app_url: str | None = Field(default=None, alias="OPENROUTER_APP_URL")
    openrouter_app_name: str = Field(default="chatrelay", alias="OPENROUTER_APP_NAME")
    llm_timeout_s: int = Field(default=120, alias="LLM_TIMEOUT_S")
    llm_max_output_tokens: int = Field(default=8192, alias="LLM_MAX_OUTPUT_TOKENS")
    thinking_budget_tokens: int = Field(default=2048, alias="THINKING_BUDGET_TOKENS")
    local_discovery_timeout_s: float = Field(default=5.0, alias="LOCAL_DISCOVERY_TIMEOUT_S")

    # Detached work (blob writes, stream drains)
    background_workers: int = Field(default=4, alias="BACKGROUND_WORKERS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure secrets are configured outside local/test."""
        if self.chatrelay_env in (Environment.STAGING, Environment.PROD):
            missing = []
            if not self.auth_jwt_secret:
                missing.append("AUTH_JWT_SECRET")
            if not self.chatrelay_key_encryption_key:
                missing.append("CHATRELAY_KEY_ENCRYPTION_KEY")
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required for CHATRELAY_ENV={self.chatrelay_env.value}"
                )

        if self.thinking_budget_tokens >= self.llm_max_output_tokens:
            raise ValueError("THINKING_BUDGET_TOKENS must be below LLM_MAX_OUTPUT_TOKENS")

        return self

    @property
    def audience_list(self) -> list[str]:
        """Parse comma-separated audiences into a list."""
        return [a.strip() for a in self.auth_jwt_audiences.split(",") if a.strip()]

    @property
    def normalized_issuer(self) -> str:
        """Return issuer with trailing slash stripped."""
        return self.auth_jwt_issuer.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
