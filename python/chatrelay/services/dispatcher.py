"""Provider dispatch: model key + user + turns -> one streamed provider call.

Decision procedure:
1. Resolve the model: static catalog first, then the user's local servers.
   Neither -> InvalidModelError.
2. Resolve the credential (personal > shared > aggregator > local).
3. Compute feature toggles from capabilities, the search flag and the
   detected image-generation intent.
4. Stream through LLMRouter, whose adapter table is keyed by provider id.

Feature toggles apply to direct vendor credentials only. On the aggregator
route the model alias already selects the variant (e.g. ":thinking") and no
provider options are sent.

Provider and transport errors are never retried; they surface as
UpstreamError carrying the provider's own message.
"""

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatrelay.errors import InvalidModelError, UnsupportedProviderError, UpstreamError
from chatrelay.logging import get_logger
from chatrelay.services.api_key_resolver import (
    ResolvedCredential,
    get_local_endpoints,
    resolve_credential,
)
from chatrelay.services.llm import LLMError, LLMRouter
from chatrelay.services.llm.types import (
    GeneratedFile,
    LLMCallContext,
    LLMChunk,
    LLMOperation,
    LLMRequest,
    LLMSource,
    LLMUsage,
    Turn,
)
from chatrelay.services.local_models import LocalModel, LocalModelDiscovery
from chatrelay.services.model_registry import (
    Capability,
    ModelDescriptor,
    ModelRegistry,
    detect_image_generation_request,
)

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS = 8192
DEFAULT_THINKING_BUDGET = 2048
DEFAULT_TIMEOUT_S = 120

OPENAI_REASONING_EFFORT = "low"
TEXT_MODALITIES = ("TEXT",)
IMAGE_MODALITIES = ("TEXT", "IMAGE")


@dataclass(frozen=True)
class FeatureToggles:
    search_grounding: bool = False
    web_search: bool = False
    thinking: bool = False
    generate_image: bool = False


@dataclass(frozen=True)
class DispatchPlan:
    """Everything needed to issue the provider call, resolved up front.

    Building a plan does no provider I/O (local discovery aside), so every
    validation error surfaces before the response starts.
    """

    model_key: str
    credential: ResolvedCredential
    request: LLMRequest
    features: FeatureToggles
    descriptor: ModelDescriptor | None = None
    local_model: LocalModel | None = None

    @property
    def provider(self) -> str:
        return self.credential.provider


def last_user_text(turns: Sequence[Turn]) -> str:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn.text
    return ""


class Dispatcher:
    """Builds dispatch plans and streams them through the router."""

    def __init__(
        self,
        router: LLMRouter,
        registry: ModelRegistry,
        discovery: LocalModelDiscovery,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        thinking_budget: int = DEFAULT_THINKING_BUDGET,
        timeout_s: int = DEFAULT_TIMEOUT_S,
    ):
        self.router = router
        self.registry = registry
        self.discovery = discovery
        self.max_tokens = max_tokens
        self.thinking_budget = thinking_budget
        self.timeout_s = timeout_s

    async def prepare(
        self,
        db: Session,
        user_id: str,
        model_key: str,
        turns: Sequence[Turn],
        search_enabled: bool = False,
    ) -> DispatchPlan:
        """Resolve model, credential and toggles for one call.

        Raises:
            InvalidModelError: Model is neither in the catalog nor served locally.
            UnsupportedProviderError: No adapter for the model's provider.
            NoCredentialError: No credential for the provider.
        """
        descriptor = self.registry.lookup(model_key)
        if descriptor is None:
            return await self._prepare_local(db, user_id, model_key, turns)

        if not self.router.is_provider_available(descriptor.provider):
            raise UnsupportedProviderError(descriptor.provider)

        credential = await run_in_threadpool(
            resolve_credential,
            db,
            user_id,
            descriptor.provider,
            allow_aggregator=descriptor.aggregator_alias is not None,
        )
        if not self.router.is_provider_available(credential.provider):
            raise UnsupportedProviderError(credential.provider)

        features = self._features(descriptor, credential, turns, search_enabled)
        outbound = list(turns)
        if features.generate_image:
            # Image-generating calls reject system instructions
            outbound = [t for t in outbound if t.role != "system"]

        request = self._build_request(
            credential.model_name_for(descriptor), outbound, descriptor, credential, features
        )
        logger.info(
            "dispatch_planned",
            model_key=model_key,
            provider=credential.provider,
            credential_source=credential.source,
            search_grounding=features.search_grounding,
            web_search=features.web_search,
            thinking=features.thinking,
            generate_image=features.generate_image,
        )
        return DispatchPlan(
            model_key=model_key,
            credential=credential,
            request=request,
            features=features,
            descriptor=descriptor,
        )

    async def _prepare_local(
        self, db: Session, user_id: str, model_key: str, turns: Sequence[Turn]
    ) -> DispatchPlan:
        endpoints = await run_in_threadpool(get_local_endpoints, db, user_id)
        local = await self.discovery.find(model_key, endpoints) if endpoints else None
        if local is None:
            raise InvalidModelError(model_key)

        stored = await run_in_threadpool(resolve_credential, db, user_id, local.provider)
        credential = ResolvedCredential(
            provider=local.provider,
            requested_provider=local.provider,
            source="local",
            base_url=local.base_url,
            credential_id=stored.credential_id,
        )
        request = LLMRequest(model_name=local.id, messages=list(turns), max_tokens=self.max_tokens)
        logger.info(
            "dispatch_planned",
            model_key=model_key,
            provider=local.provider,
            credential_source="local",
        )
        return DispatchPlan(
            model_key=model_key,
            credential=credential,
            request=request,
            features=FeatureToggles(),
            local_model=local,
        )

    def _features(
        self,
        descriptor: ModelDescriptor,
        credential: ResolvedCredential,
        turns: Sequence[Turn],
        search_enabled: bool,
    ) -> FeatureToggles:
        generate_image = descriptor.supports(Capability.IMAGE) and detect_image_generation_request(
            last_user_text(turns)
        )
        if not credential.is_direct:
            return FeatureToggles(generate_image=generate_image)

        provider = descriptor.provider
        return FeatureToggles(
            search_grounding=search_enabled and provider == "google",
            web_search=search_enabled and provider == "openai",
            thinking=descriptor.supports(Capability.THINKING),
            generate_image=generate_image,
        )

    def _build_request(
        self,
        model_name: str,
        turns: list[Turn],
        descriptor: ModelDescriptor,
        credential: ResolvedCredential,
        features: FeatureToggles,
    ) -> LLMRequest:
        if not credential.is_direct:
            return LLMRequest(model_name=model_name, messages=turns, max_tokens=self.max_tokens)

        provider = descriptor.provider
        thinking_budget = None
        reasoning_effort = None
        response_modalities = None
        if features.thinking and provider in ("google", "anthropic"):
            thinking_budget = self.thinking_budget
        if features.thinking and provider == "openai":
            reasoning_effort = OPENAI_REASONING_EFFORT
        if provider == "google":
            response_modalities = IMAGE_MODALITIES if features.generate_image else TEXT_MODALITIES

        return LLMRequest(
            model_name=model_name,
            messages=turns,
            max_tokens=self.max_tokens,
            thinking_budget=thinking_budget,
            reasoning_effort=reasoning_effort,
            web_search=features.web_search,
            search_grounding=features.search_grounding,
            response_modalities=response_modalities,
        )

    async def stream(
        self, plan: DispatchPlan, *, chat_id: str | None = None
    ) -> AsyncIterator[LLMChunk]:
        """Issue the streamed call.

        Raises:
            UpstreamError: Any provider or transport failure, message preserved.
        """
        try:
            async for chunk in self.router.generate_stream(
                plan.provider,
                plan.request,
                plan.credential.secret,
                base_url=plan.credential.base_url,
                timeout_s=self.timeout_s,
                key_mode=plan.credential.source,
                call_context=LLMCallContext(operation=LLMOperation.CHAT_SEND, chat_id=chat_id),
            ):
                yield chunk
        except LLMError as e:
            raise UpstreamError(e.message, provider=e.provider or plan.provider) from e


# =============================================================================
# Stream accumulation
# =============================================================================


@dataclass(frozen=True)
class CompletionResult:
    """Final output of a naturally ended stream."""

    text: str
    reasoning: str | None
    sources: tuple[LLMSource, ...]
    files: tuple[GeneratedFile, ...]
    usage: LLMUsage | None = None


@dataclass
class CompletionAccumulator:
    """Folds streamed chunks into the final completion."""

    text_parts: list[str] = field(default_factory=list)
    reasoning_parts: list[str] = field(default_factory=list)
    sources: dict[str, LLMSource] = field(default_factory=dict)
    files: list[GeneratedFile] = field(default_factory=list)
    usage: LLMUsage | None = None
    done: bool = False

    def add(self, chunk: LLMChunk) -> None:
        if chunk.delta_text:
            self.text_parts.append(chunk.delta_text)
        if chunk.reasoning_delta:
            self.reasoning_parts.append(chunk.reasoning_delta)
        for source in chunk.sources:
            self.sources.setdefault(source.url, source)
        self.files.extend(chunk.files)
        if chunk.done:
            self.done = True
            self.usage = chunk.usage

    def result(self) -> CompletionResult:
        reasoning = "".join(self.reasoning_parts)
        return CompletionResult(
            text="".join(self.text_parts),
            reasoning=reasoning or None,
            sources=tuple(self.sources.values()),
            files=tuple(self.files),
            usage=self.usage,
        )
