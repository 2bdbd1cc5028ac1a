"""Model catalog and capability lookup.

The registry is built once at startup (see app.lifespan) and passed
explicitly; nothing here reads global state or does I/O.

Provider ids:
- openai, anthropic, google: direct vendors
- openrouter: aggregator; reaches the vendor models under "vendor/alias" ids
- lmstudio, ollama: local servers, discovered per user (see local_models)
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class Capability(str, Enum):
    """Closed set of model capabilities."""

    TEXT = "text"
    TOOLS = "tools"
    THINKING = "thinking"
    IMAGE = "image"


VENDOR_PROVIDERS = ("openai", "anthropic", "google")
AGGREGATOR_PROVIDER = "openrouter"
LOCAL_PROVIDERS = ("lmstudio", "ollama")


@dataclass(frozen=True)
class ModelDescriptor:
    """One entry of the static catalog.

    aggregator_alias is the model's id on the aggregator without the vendor
    prefix; None means the model cannot be reached through the aggregator.
    """

    key: str
    provider: str
    label: str
    capabilities: frozenset[Capability]
    aggregator_alias: str | None = None

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "provider": self.provider,
            "label": self.label,
            "capabilities": sorted(c.value for c in self.capabilities),
            "openRouterCompatible": self.aggregator_alias is not None,
        }


def _caps(*names: Capability) -> frozenset[Capability]:
    return frozenset(names)


T, TOOLS, THINK, IMG = Capability.TEXT, Capability.TOOLS, Capability.THINKING, Capability.IMAGE

DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        "gemini-2.0-flash-exp", "google", "Gemini 2.0 Flash Experimental",
        _caps(T, TOOLS, IMG), "gemini-2.0-flash-exp",
    ),
    ModelDescriptor(
        "gemini-2.0-flash", "google", "Gemini 2.0 Flash",
        _caps(T, TOOLS), "gemini-2.0-flash-001",
    ),
    ModelDescriptor(
        "gemini-2.5-flash-preview-04-17", "google", "Gemini 2.5 Flash",
        _caps(T, TOOLS, THINK), "gemini-2.5-flash-preview:thinking",
    ),
    ModelDescriptor(
        "gemini-2.5-pro-preview-05-06", "google", "Gemini 2.5 Pro",
        _caps(T, TOOLS, THINK), "gemini-2.5-pro-preview",
    ),
    ModelDescriptor(
        "claude-3-5-sonnet-20241022", "anthropic", "Claude 3.5 Sonnet",
        _caps(T), "claude-3.5-sonnet",
    ),
    ModelDescriptor(
        "claude-3-7-sonnet-20250219", "anthropic", "Claude 3.7 Sonnet",
        _caps(T, THINK), "claude-3.7-sonnet:thinking",
    ),
    ModelDescriptor(
        "claude-4-sonnet", "anthropic", "Claude Sonnet 4",
        _caps(T, THINK), "claude-sonnet-4",
    ),
    ModelDescriptor("o3-mini", "openai", "O3 Mini", _caps(T, TOOLS, THINK), "o3-mini"),
    ModelDescriptor("o4-mini", "openai", "O4 Mini", _caps(T, TOOLS, THINK), "o4-mini"),
    ModelDescriptor("gpt-4o-mini", "openai", "GPT-4o Mini", _caps(T, TOOLS), "gpt-4o-mini"),
)


class ModelRegistry:
    """Immutable lookup over a set of model descriptors."""

    def __init__(self, descriptors: Iterable[ModelDescriptor] = DEFAULT_MODELS):
        self._by_key: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.key in self._by_key:
                raise ValueError(f"Duplicate model key: {descriptor.key}")
            self._by_key[descriptor.key] = descriptor

    def lookup(self, key: str) -> ModelDescriptor | None:
        return self._by_key.get(key)

    def all(self) -> list[ModelDescriptor]:
        return list(self._by_key.values())

    def supports(self, key: str, capability: Capability) -> bool:
        descriptor = self.lookup(key)
        return descriptor is not None and descriptor.supports(capability)

    def for_providers(self, providers: Iterable[str]) -> list[ModelDescriptor]:
        """Models reachable with credentials for the given providers.

        An aggregator credential reaches every vendor model that has an alias.
        """
        available = set(providers)
        via_aggregator = AGGREGATOR_PROVIDER in available
        return [
            d
            for d in self._by_key.values()
            if d.provider in available
            or (via_aggregator and d.provider in VENDOR_PROVIDERS and d.aggregator_alias)
        ]

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)


# =============================================================================
# Image generation intent
# =============================================================================

# Heuristic, not a classifier: misses and false hits are accepted behavior
IMAGE_GENERATION_KEYWORDS: tuple[str, ...] = (
    # Spanish
    "genera una imagen",
    "generar imagen",
    "crea una imagen",
    "crear imagen",
    "dibuja",
    "dibujar",
    "haz una imagen",
    "hacer imagen",
    "produce una imagen",
    "producir imagen",
    "diseña",
    "diseñar",
    "ilustra",
    "ilustrar",
    # English
    "generate an image",
    "generate image",
    "create an image",
    "create image",
    "draw",
    "make an image",
    "make image",
    "produce an image",
    "produce image",
    "design",
    "illustrate",
    "sketch",
    "render",
    # Common phrases
    "imagen de",
    "image of",
    "picture of",
    "photo of",
    "foto de",
    "drawing of",
    "dibujo de",
)


def detect_image_generation_request(text: str) -> bool:
    """True if text contains any image-request keyword (case-insensitive substring)."""
    lowered = text.lower()
    return any(keyword in lowered for keyword in IMAGE_GENERATION_KEYWORDS)
