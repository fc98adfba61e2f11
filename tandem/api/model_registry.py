"""Short model tier names (opus/sonnet/haiku) to concrete provider model ids."""

from __future__ import annotations

import logging

from tandem.api.provider import ProviderClient
from tandem.errors import ProviderError

logger = logging.getLogger(__name__)

FALLBACK_MODELS: dict[str, str] = {
    "opus": "claude-opus-4-1-20250805",
    "sonnet": "claude-sonnet-4-5-20250929",
    "haiku": "claude-haiku-4-5-20251001",
}

# Per tier, id prefixes in priority order (newest family first)
TIER_PREFIXES: dict[str, tuple[str, ...]] = {
    "opus": ("claude-opus-4-1", "claude-opus-4"),
    "sonnet": ("claude-sonnet-4-5", "claude-sonnet-4", "claude-3-7-sonnet", "claude-3-5-sonnet"),
    "haiku": ("claude-haiku-4-5", "claude-3-5-haiku", "claude-3-haiku"),
}


class ModelRegistry:
    """Resolves tier names using the provider's model list, else a static table."""

    def __init__(self, fallback: dict[str, str] | None = None) -> None:
        self._fallback = dict(fallback or FALLBACK_MODELS)
        self._discovered: dict[str, str] = {}

    @property
    def mappings(self) -> dict[str, str]:
        return {**self._fallback, **self._discovered}

    def learn(self, model_ids: list[str]) -> dict[str, str]:
        """Pick the best id for each tier from ``model_ids`` (API order)."""
        found: dict[str, str] = {}
        for tier, prefixes in TIER_PREFIXES.items():
            for prefix in prefixes:
                match = next((m for m in model_ids if m.startswith(prefix)), None)
                if match:
                    found[tier] = match
                    break
        self._discovered.update(found)
        return found

    async def refresh(self, provider: ProviderClient) -> None:
        """Fetch the model list; on failure keep the fallback table."""
        try:
            ids = await provider.list_models()
        except ProviderError as e:
            logger.warning("Model listing failed, using fallback mapping: %s", e)
            return
        found = self.learn(ids)
        for tier in TIER_PREFIXES:
            logger.info("Model tier %-6s -> %s", tier, found.get(tier, f"{self._fallback.get(tier)} (fallback)"))

    def resolve(self, name: str) -> str:
        """Concrete id for ``name``.

        Full ids (``claude-*`` or anything containing ``/``) pass through.
        Unknown names pass through with a warning.
        """
        if name.startswith("claude-") or "/" in name:
            return name
        resolved = self.mappings.get(name.lower())
        if resolved:
            return resolved
        logger.warning("Unknown model name %r, using as-is", name)
        return name
