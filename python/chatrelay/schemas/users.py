"""User and profile Pydantic schemas."""

from datetime import datetime

from pydantic import ConfigDict, Field, field_validator

from chatrelay.schemas.base import CamelModel


class UserOut(CamelModel):
    id: str
    username: str
    grants: list[str]
    language: str | None = None
    default_system_prompt: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreateUserRequest(CamelModel):
    """Body of POST /api/users.

    The account's id is the ``sub`` claim of the tokens its holder will
    present; when omitted one is generated.
    """

    id: str | None = Field(default=None, max_length=64)
    username: str = Field(..., min_length=1, max_length=255)
    grants: list[str] = Field(default_factory=list)

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Username is required")
        return v


class UpdateGrantsRequest(CamelModel):
    grants: list[str]


class UpdateMeRequest(CamelModel):
    """Body of PATCH /api/me. Omitted fields are left unchanged."""

    language: str | None = Field(default=None, max_length=16)
    default_system_prompt: str | None = None
