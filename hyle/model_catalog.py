"""
Model Catalog
=============

Context windows and pricing for the models in the rotation.

The listing is fetched from the provider and cached in
``~/.cache/hyle/models.json`` for 24 hours. Unknown models fall back to a
conservative context window and zero cost.
"""

import logging
import os
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Optional

from hyle.errors import ProviderError, StoreIoError
from hyle.locking import atomic_write_json, read_json
from hyle.providers import ModelProvider, Usage

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_CONTEXT_WINDOW = 8192

# Used when the catalog has no entry for a model.
CONTEXT_WINDOW_HINTS = [
    ("claude", 200_000),
    ("gpt-4o", 128_000),
    ("deepseek", 131_072),
    ("llama-3.1-8b", 16_384),
    ("llama-3.2-3b", 8192),
    ("gemma", 8192),
    ("mistral", 8192),
    ("qwen", 8192),
]


def default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / "hyle"


@dataclass
class ModelInfo:
    """One entry of the provider's model listing. Prices are USD per token."""
    id: str
    name: str = ""
    context_length: int = DEFAULT_CONTEXT_WINDOW
    prompt_price: float = 0.0
    completion_price: float = 0.0

    @property
    def is_free(self) -> bool:
        return self.prompt_price == 0.0 and self.completion_price == 0.0

    @property
    def display_name(self) -> str:
        return self.id.split("/", 1)[1] if "/" in self.id else self.id

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelInfo":
        return cls(**data)

    @classmethod
    def from_listing(cls, raw: dict) -> "ModelInfo":
        pricing = raw.get("pricing") or {}

        def price(key: str) -> float:
            try:
                return float(pricing.get(key) or 0.0)
            except (TypeError, ValueError):
                return 0.0

        return cls(
            id=raw["id"],
            name=raw.get("name") or "",
            context_length=int(raw.get("context_length") or DEFAULT_CONTEXT_WINDOW),
            prompt_price=price("prompt"),
            completion_price=price("completion"),
        )


class ModelCatalog:
    """Cached model metadata."""

    def __init__(self, cache_dir: Optional[Path] = None, ttl: float = CACHE_TTL_SECONDS):
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.cache_file = self.cache_dir / "models.json"
        self.ttl = ttl
        self._models: Dict[str, ModelInfo] = {}
        self._load_cache()

    def _load_cache(self) -> None:
        if not self.cache_file.exists():
            return
        try:
            data = read_json(self.cache_file)
        except StoreIoError as e:
            logger.warning("Ignoring unreadable model cache: %s", e)
            return
        if time.time() - data.get("fetched_at", 0) > self.ttl:
            logger.debug("Model cache is stale")
            return
        self._models = {m["id"]: ModelInfo.from_dict(m) for m in data.get("models", [])}

    def _save_cache(self) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_json(self.cache_file, {
            "fetched_at": time.time(),
            "models": [m.to_dict() for m in self._models.values()],
        })

    @property
    def is_loaded(self) -> bool:
        return bool(self._models)

    async def refresh(self, provider: ModelProvider) -> List[ModelInfo]:
        """Fetch the listing from ``provider`` and rewrite the cache."""
        raw = await provider.list_models()
        models = {}
        for entry in raw:
            try:
                info = ModelInfo.from_listing(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping malformed model entry: %s", e)
                continue
            models[info.id] = info
        self._models = models
        self._save_cache()
        return list(models.values())

    async def ensure_loaded(self, provider: ModelProvider) -> None:
        """Refresh only when there is no fresh cache. Failures leave the catalog empty."""
        if self._models:
            return
        try:
            await self.refresh(provider)
        except ProviderError as e:
            logger.warning("Could not fetch model list: %s", e)

    def get(self, model_id: str) -> Optional[ModelInfo]:
        return self._models.get(model_id)

    def models(self) -> List[ModelInfo]:
        return list(self._models.values())

    def free_models(self) -> List[ModelInfo]:
        """Free models, largest context first."""
        return sorted((m for m in self._models.values() if m.is_free), key=lambda m: -m.context_length)

    def context_window(self, model_id: str) -> int:
        info = self._models.get(model_id)
        if info is not None:
            return info.context_length
        lowered = model_id.lower()
        for needle, window in CONTEXT_WINDOW_HINTS:
            if needle in lowered:
                return window
        return DEFAULT_CONTEXT_WINDOW

    def calculate_cost(self, model_id: str, usage: Usage) -> float:
        info = self._models.get(model_id)
        if info is None:
            return 0.0
        return usage.prompt_tokens * info.prompt_price + usage.completion_tokens * info.completion_price
