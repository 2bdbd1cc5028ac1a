"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from chatrelay.schemas.base import CamelModel
from chatrelay.schemas.chats import (
    AttachmentOut,
    BranchChatRequest,
    ChatDetailOut,
    ChatOut,
    ChatSummaryOut,
    DeleteAttachmentsRequest,
    EditMessageRequest,
    ExperimentalAttachment,
    GroupedChatsOut,
    MessageOut,
    RenameChatRequest,
    SavedAttachmentRef,
    SharedChatOut,
    ShareOut,
    ShareStatusOut,
    StreamChatRequest,
    StreamMessageIn,
    TruncateMessagesRequest,
)
from chatrelay.schemas.keys import (
    ApiKeyOut,
    AvailableModelsOut,
    SaveApiKeyRequest,
    SaveApiUrlRequest,
    UpdateScopeRequest,
)
from chatrelay.schemas.users import (
    CreateUserRequest,
    UpdateGrantsRequest,
    UpdateMeRequest,
    UserOut,
)

__all__ = [
    "CamelModel",
    # Chat schemas
    "ChatOut",
    "ChatDetailOut",
    "ChatSummaryOut",
    "GroupedChatsOut",
    "MessageOut",
    "AttachmentOut",
    "ShareOut",
    "ShareStatusOut",
    "SharedChatOut",
    "StreamChatRequest",
    "StreamMessageIn",
    "SavedAttachmentRef",
    "ExperimentalAttachment",
    "EditMessageRequest",
    "TruncateMessagesRequest",
    "BranchChatRequest",
    "RenameChatRequest",
    "DeleteAttachmentsRequest",
    # Credential schemas
    "ApiKeyOut",
    "AvailableModelsOut",
    "SaveApiKeyRequest",
    "SaveApiUrlRequest",
    "UpdateScopeRequest",
    # User schemas
    "UserOut",
    "CreateUserRequest",
    "UpdateGrantsRequest",
    "UpdateMeRequest",
]
