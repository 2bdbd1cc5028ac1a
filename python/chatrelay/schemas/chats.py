"""Chat, message and attachment Pydantic schemas.

Request bodies use the camelCase keys the web client sends; the one
exception is ``experimental_attachments``, which the client sends verbatim.
"""

from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, Field, StrictInt, computed_field, field_validator

from chatrelay.schemas.base import CamelModel

MessageRoleValue = Literal["system", "user", "assistant"]

FILES_ROUTE_PREFIX = "/api/files/"


# =============================================================================
# Response Schemas
# =============================================================================


class AttachmentOut(CamelModel):
    """A stored file linked to a message."""

    id: str
    message_id: str
    file_name: str
    file_type: str
    file_size: int
    file_path: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def url(self) -> str:
        return f"{FILES_ROUTE_PREFIX}{self.file_path}"


class SourceOut(CamelModel):
    title: str
    url: str


class MessageOut(CamelModel):
    """A persisted message. Ordered by created_at within a chat."""

    id: str
    chat_id: str
    role: MessageRoleValue
    content: str
    model: str | None = None
    reasoning: str | None = None
    sources: list[SourceOut] | None = None
    has_web_search: bool
    has_attachments: bool
    temporary_id: str | None = None
    created_at: datetime
    attachments: list[AttachmentOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("role", mode="before")
    @classmethod
    def role_value(cls, v: object) -> object:
        return getattr(v, "value", v)


class ChatSummaryOut(CamelModel):
    id: str
    title: str

    model_config = ConfigDict(from_attributes=True)


class ChatOut(CamelModel):
    """Chat metadata without messages."""

    id: str
    title: str
    is_branched: bool
    share_path: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatDetailOut(ChatOut):
    """Chat with its visible (non-system) messages."""

    messages: list[MessageOut] = Field(default_factory=list)


class GroupedChatsOut(CamelModel):
    """Chat list bucketed by updated_at relative to now."""

    today: list[ChatSummaryOut] = Field(default_factory=list)
    yesterday: list[ChatSummaryOut] = Field(default_factory=list)
    last7_days: list[ChatSummaryOut] = Field(default_factory=list, alias="last7Days")
    last30_days: list[ChatSummaryOut] = Field(default_factory=list, alias="last30Days")
    older: list[ChatSummaryOut] = Field(default_factory=list)


class ShareOut(CamelModel):
    share_path: str
    share_url: str


class ShareStatusOut(CamelModel):
    is_shared: bool
    share_path: str | None = None
    share_url: str | None = None


class SharedChatOut(CamelModel):
    """Public read-only view of a shared chat."""

    title: str
    created_at: datetime
    updated_at: datetime
    messages: list[MessageOut] = Field(default_factory=list)


# =============================================================================
# Request Schemas
# =============================================================================


class SavedAttachmentRef(CamelModel):
    """A previously persisted attachment referenced by a history message."""

    file_path: str
    file_name: str
    file_type: str


class ExperimentalAttachment(CamelModel):
    """A client-side attachment: a data: URL or a fetchable remote URL."""

    name: str
    content_type: str
    url: str


class StreamMessageIn(CamelModel):
    """One message of the conversation history sent by the client.

    chat_id is present on messages loaded from the database and absent on
    a fresh submission; id is the client's temporary message id.
    """

    id: str | None = None
    role: MessageRoleValue
    content: str = ""
    chat_id: str | None = None
    attachments: list[SavedAttachmentRef] = Field(default_factory=list)
    experimental_attachments: list[ExperimentalAttachment] = Field(
        default_factory=list, alias="experimental_attachments"
    )


class StreamChatRequest(CamelModel):
    """Body of POST /api/chats/{chat_id}."""

    id: str | None = None
    messages: list[StreamMessageIn] = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    is_search_enabled: bool = False


class EditMessageRequest(CamelModel):
    """Body of PUT /api/chats/{chat_id}/messages.

    The target is matched by durable id or by the client's temporary id.
    """

    message_id: str | None = None
    temp_message_id: str | None = None
    content: str

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message content is required")
        return v


class TruncateMessagesRequest(CamelModel):
    """Body of DELETE /api/chats/{chat_id}/messages."""

    message_index: StrictInt = Field(..., ge=0)


class BranchChatRequest(CamelModel):
    message_id: str = Field(..., min_length=1)


class RenameChatRequest(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v


class DeleteAttachmentsRequest(CamelModel):
    attachment_ids: list[str] = Field(..., min_length=1)
