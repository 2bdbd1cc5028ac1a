"""Shared type definitions for the LLM adapter layer.

- ContentPart: TextPart | ImagePart | FilePart, the typed fragments of a turn
- Turn: Provider-agnostic conversation turn
- LLMRequest: Request to LLM adapter, including per-call feature toggles
- LLMResponse: Complete response from non-streaming call
- LLMChunk: Single chunk from streaming response

Streaming invariants:
- Chunks with done=False MUST have usage=None
- Exactly ONE terminal chunk with done=True
- Terminal chunk MAY have usage and provider_request_id (if provider returns them)
- If provider stream ends without terminal marker: raise E_LLM_PROVIDER_DOWN
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Raw image bytes with their declared MIME type."""

    data: bytes
    mime_type: str


@dataclass(frozen=True)
class FilePart:
    """Raw non-image file bytes, e.g. a PDF or a text file."""

    data: bytes
    mime_type: str
    filename: str


ContentPart = TextPart | ImagePart | FilePart


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn.

    Attributes:
        role: One of "system", "user", or "assistant"
        content: Flat text, or an ordered tuple of content parts for user
            turns that carry attachments (text part first)
    """

    role: Role
    content: str | tuple[ContentPart, ...]

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        if isinstance(self.content, str):
            return (TextPart(self.content),)
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of the turn, media parts ignored."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics,
    and streaming responses may not include usage data.
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None


@dataclass(frozen=True)
class LLMRequest:
    """Request to LLM adapter.

    Attributes:
        model_name: Provider model id (already aliased for aggregators)
        messages: Turns in conversation order
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature, None uses provider default
        thinking_budget: Reasoning token budget (Gemini, Anthropic)
        reasoning_effort: Reasoning effort hint (OpenAI)
        web_search: Tool-based web search (OpenAI Responses API)
        search_grounding: Provider-native search grounding (Gemini)
        response_modalities: Gemini output modalities, e.g. ("TEXT", "IMAGE")
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None
    thinking_budget: int | None = None
    reasoning_effort: str | None = None
    web_search: bool = False
    search_grounding: bool = False
    response_modalities: tuple[str, ...] | None = None


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from non-streaming call."""

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


@dataclass(frozen=True)
class LLMSource:
    """A citation returned by search. Only URL sources are modeled."""

    url: str
    title: str | None = None


@dataclass(frozen=True)
class GeneratedFile:
    """Binary output of an image-generating model."""

    data: bytes
    mime_type: str


@dataclass(frozen=True)
class LLMChunk:
    """Single chunk from streaming response.

    Streaming invariants:
    - done=False: delta_text / reasoning_delta / sources / files carry new
      output, usage MUST be None
    - done=True: This is the terminal chunk. delta_text may be empty.
    """

    delta_text: str
    done: bool
    usage: LLMUsage | None = None
    provider_request_id: str | None = None
    reasoning_delta: str = ""
    sources: tuple[LLMSource, ...] = field(default_factory=tuple)
    files: tuple[GeneratedFile, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.done and self.usage is not None:
            raise ValueError("Non-terminal chunks (done=False) must have usage=None")

    @property
    def is_empty(self) -> bool:
        return not (self.delta_text or self.reasoning_delta or self.sources or self.files)


class LLMOperation(str, Enum):
    """What a provider call is for. Logged with every llm.request.* event."""

    CHAT_SEND = "chat_send"
    TITLE = "title"
    OTHER = "other"


@dataclass(frozen=True)
class LLMCallContext:
    operation: LLMOperation
    chat_id: str | None = None
