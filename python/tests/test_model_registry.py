"""Tests for the model catalog and image-generation intent detection.

Pure unit tests: no database, no network.
"""

import pytest

from chatrelay.services.model_registry import (
    DEFAULT_MODELS,
    Capability,
    ModelDescriptor,
    ModelRegistry,
    detect_image_generation_request,
)


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry()


class TestLookup:
    """Catalog lookups by model key."""

    def test_known_model(self, registry):
        descriptor = registry.lookup("claude-3-7-sonnet-20250219")
        assert descriptor is not None
        assert descriptor.provider == "anthropic"
        assert descriptor.supports(Capability.THINKING)

    def test_unknown_model_is_none(self, registry):
        assert registry.lookup("gpt-99") is None
        assert "gpt-99" not in registry

    def test_supports_unknown_model_is_false(self, registry):
        assert registry.supports("gpt-99", Capability.TEXT) is False

    def test_image_capable_model(self, registry):
        assert registry.supports("gemini-2.0-flash-exp", Capability.IMAGE)
        assert not registry.supports("gemini-2.0-flash", Capability.IMAGE)

    def test_all_keeps_catalog_order(self, registry):
        assert [d.key for d in registry.all()] == [d.key for d in DEFAULT_MODELS]
        assert len(registry) == len(DEFAULT_MODELS)

    def test_duplicate_keys_rejected(self):
        d = ModelDescriptor("m", "openai", "M", frozenset({Capability.TEXT}))
        with pytest.raises(ValueError, match="Duplicate model key"):
            ModelRegistry([d, d])


class TestForProviders:
    """Models reachable with a set of credentials."""

    def test_direct_provider_only(self, registry):
        keys = {d.key for d in registry.for_providers(["anthropic"])}
        assert keys == {d.key for d in DEFAULT_MODELS if d.provider == "anthropic"}

    def test_aggregator_reaches_every_aliased_vendor_model(self, registry):
        keys = {d.key for d in registry.for_providers(["openrouter"])}
        assert keys == {d.key for d in DEFAULT_MODELS if d.aggregator_alias}

    def test_no_providers(self, registry):
        assert registry.for_providers([]) == []

    def test_to_dict_shape(self, registry):
        data = registry.lookup("o3-mini").to_dict()
        assert data == {
            "key": "o3-mini",
            "provider": "openai",
            "label": "O3 Mini",
            "capabilities": ["text", "thinking", "tools"],
            "openRouterCompatible": True,
        }


class TestImageGenerationIntent:
    """Keyword heuristic for image requests."""

    @pytest.mark.parametrize(
        "text",
        [
            "Please generate an image of a cat",
            "DRAW me a horse",
            "dibuja un perro",
            "A picture of the sea at night",
        ],
    )
    def test_matches(self, text):
        assert detect_image_generation_request(text)

    @pytest.mark.parametrize("text", ["What is the capital of France?", "", "hello there"])
    def test_no_match(self, text):
        assert not detect_image_generation_request(text)
