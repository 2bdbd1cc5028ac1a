"""Discovery of models served by a user's local LM Studio / Ollama servers.

Two dialects:
- LM Studio: GET {base}/v1/models -> {"data": [{"id": ...}]}
- Ollama:    GET {base}/api/tags  -> {"models": [{"name": ...}]}

Discovery never raises: an unreachable server or a bad response is logged
and yields no models.
"""

import re
from dataclasses import dataclass

import httpx

from chatrelay.logging import get_logger
from chatrelay.services.model_registry import Capability

logger = get_logger(__name__)

_LMSTUDIO_SUFFIX = re.compile(r"/v1/?$")
_OLLAMA_SUFFIX = re.compile(r"/api/?$")

LOCAL_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "lmstudio": frozenset({Capability.TEXT, Capability.TOOLS}),
    "ollama": frozenset({Capability.TEXT}),
}


@dataclass(frozen=True)
class LocalModel:
    id: str
    provider: str
    base_url: str
    capabilities: frozenset[Capability]

    @property
    def key(self) -> str:
        return f"{self.provider}-{self.id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.id,
            "provider": self.provider,
            "key": self.key,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


def normalize_base_url(provider: str, url: str) -> str:
    """Strip the dialect's API suffix so the server root remains."""
    if provider == "lmstudio":
        return _LMSTUDIO_SUFFIX.sub("", url.strip())
    if provider == "ollama":
        return _OLLAMA_SUFFIX.sub("", url.strip())
    return url.strip().rstrip("/")


class LocalModelDiscovery:
    """Lists models on local servers with the shared httpx client."""

    def __init__(self, client: httpx.AsyncClient, timeout_s: float = 5.0):
        self._client = client
        self._timeout_s = timeout_s

    async def list_models(self, provider: str, base_url: str) -> list[LocalModel]:
        if provider == "lmstudio":
            return await self._fetch(provider, base_url, "/v1/models", "data", "id")
        if provider == "ollama":
            return await self._fetch(provider, base_url, "/api/tags", "models", "name")
        return []

    async def list_all(self, endpoints: dict[str, str]) -> list[LocalModel]:
        """Models across every configured endpoint, in provider order."""
        models: list[LocalModel] = []
        for provider in ("lmstudio", "ollama"):
            url = endpoints.get(provider)
            if url:
                models.extend(await self.list_models(provider, url))
        return models

    async def find(self, model_key: str, endpoints: dict[str, str]) -> LocalModel | None:
        """Resolve a "{provider}-{id}" key against the endpoint that would serve it."""
        for provider, url in endpoints.items():
            prefix = f"{provider}-"
            if not url or not model_key.startswith(prefix):
                continue
            model_id = model_key[len(prefix):]
            for model in await self.list_models(provider, url):
                if model.id == model_id:
                    return model
        return None

    async def _fetch(
        self, provider: str, base_url: str, path: str, list_key: str, id_key: str
    ) -> list[LocalModel]:
        root = normalize_base_url(provider, base_url)
        try:
            response = await self._client.get(
                f"{root}{path}",
                headers={"Content-Type": "application/json"},
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "local_models_fetch_failed", provider=provider, error_type=type(e).__name__
            )
            return []

        if not response.is_success:
            logger.warning(
                "local_models_fetch_failed", provider=provider, status_code=response.status_code
            )
            return []

        try:
            items = response.json().get(list_key) or []
        except (ValueError, AttributeError):
            logger.warning("local_models_bad_response", provider=provider)
            return []

        capabilities = LOCAL_CAPABILITIES[provider]
        return [
            LocalModel(id=item[id_key], provider=provider, base_url=root, capabilities=capabilities)
            for item in items
            if isinstance(item, dict) and item.get(id_key)
        ]
