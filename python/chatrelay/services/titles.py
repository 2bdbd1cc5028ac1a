"""Chat title generation from the first user message."""

import re

from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatrelay.db.models import Message, MessageRole
from chatrelay.errors import ApiErrorCode, InvalidRequestError, NoCredentialError, UpstreamError
from chatrelay.logging import get_logger
from chatrelay.schemas.chats import ChatOut
from chatrelay.services.api_key_resolver import ResolvedCredential, resolve_credential
from chatrelay.services.chats import get_owned_chat, update_chat_title
from chatrelay.services.llm import LLMError, LLMRouter
from chatrelay.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, Turn
from chatrelay.services.model_registry import ModelDescriptor, ModelRegistry

logger = get_logger(__name__)

TITLE_MODEL_PREFERENCE = ("gemini-2.0-flash-exp", "gpt-4o-mini")
TITLE_MAX_TOKENS = 50
TITLE_TEMPERATURE = 0.3
TITLE_MAX_CHARS = 100

TITLE_PROMPT = (
    "Generate a very short, concise title (8 words at most) for a conversation "
    "that starts with the user's message. Reply with the title only, without "
    "quotes or trailing punctuation."
)

_EDGE_QUOTES = re.compile(r"^[\"']|[\"']$")
_TRAILING_PUNCTUATION = re.compile(r"[.!?]+$")


def clean_title(raw: str) -> str:
    """Strip edge quotes and trailing punctuation, cap the length."""
    title = _EDGE_QUOTES.sub("", raw.strip())
    title = _TRAILING_PUNCTUATION.sub("", title)
    return title[:TITLE_MAX_CHARS].strip()


def _title_models(registry: ModelRegistry) -> list[ModelDescriptor]:
    preferred = [registry.lookup(key) for key in TITLE_MODEL_PREFERENCE]
    models = [d for d in preferred if d is not None]
    models.extend(d for d in registry.all() if d not in models)
    return models


def _pick_model(
    db: Session, user_id: str, registry: ModelRegistry
) -> tuple[ModelDescriptor, ResolvedCredential]:
    """First model in preference order the user holds a credential for.

    Raises:
        NoCredentialError: For the most preferred model's provider, if none resolves.
    """
    models = _title_models(registry)
    for descriptor in models:
        try:
            credential = resolve_credential(
                db,
                user_id,
                descriptor.provider,
                allow_aggregator=descriptor.aggregator_alias is not None,
            )
        except NoCredentialError:
            continue
        return descriptor, credential
    raise NoCredentialError(models[0].provider if models else "unknown")


def _load_title_source(
    db: Session, user_id: str, chat_id: str, registry: ModelRegistry
) -> tuple[str, ModelDescriptor, ResolvedCredential]:
    """First user message text plus the model and credential to title it with."""
    chat = get_owned_chat(db, user_id, chat_id)
    first_user = db.scalar(
        select(Message.content)
        .where(Message.chat_id == chat.id, Message.role == MessageRole.user)
        .order_by(Message.created_at, Message.id)
        .limit(1)
    )
    if first_user is None:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST, "No user message to generate a title from"
        )

    descriptor, credential = _pick_model(db, user_id, registry)
    return first_user, descriptor, credential


async def generate_title(
    db: Session,
    router: LLMRouter,
    registry: ModelRegistry,
    *,
    user_id: str,
    chat_id: str,
    timeout_s: int = 30,
) -> ChatOut:
    """Ask a cheap model for a title and store it.

    Raises:
        NotFoundError: Chat not owned.
        InvalidRequestError: Chat has no user message.
        NoCredentialError: No model is reachable for the user.
        UpstreamError: Provider failure or empty title.
    """
    first_text, descriptor, credential = await run_in_threadpool(
        _load_title_source, db, user_id, chat_id, registry
    )
    request = LLMRequest(
        model_name=credential.model_name_for(descriptor),
        messages=[
            Turn(role="system", content=TITLE_PROMPT),
            Turn(role="user", content=first_text),
        ],
        max_tokens=TITLE_MAX_TOKENS,
        temperature=TITLE_TEMPERATURE,
    )

    try:
        response = await router.generate(
            credential.provider,
            request,
            credential.secret,
            base_url=credential.base_url,
            timeout_s=timeout_s,
            key_mode=credential.source,
            call_context=LLMCallContext(operation=LLMOperation.TITLE, chat_id=chat_id),
        )
    except LLMError as e:
        raise UpstreamError(e.message, provider=e.provider) from e

    title = clean_title(response.text)
    if not title:
        raise UpstreamError("Provider returned an empty title", provider=credential.provider)

    logger.info("chat_title_generated", chat_id=chat_id, model_key=descriptor.key)
    return await run_in_threadpool(update_chat_title, db, user_id, chat_id, title)
