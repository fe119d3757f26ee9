from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from omniproxy.providers import Provider
from omniproxy.utils.persistence import YamlFileStore

_REASONING_LEVELS = ["low", "medium", "high"]


class ModelInfo(BaseModel):
    name: str
    reasoning_levels: list[str] = Field(default_factory=list)


class ModelCatalog(BaseModel):
    """Static model names advertised per provider. Used for listing only."""

    codex: list[ModelInfo] = Field(default_factory=list)
    claude: list[ModelInfo] = Field(default_factory=list)
    gemini: list[ModelInfo] = Field(default_factory=list)

    def models_for(self, provider: Provider) -> list[ModelInfo]:
        return list(getattr(self, provider.value))

    @classmethod
    def default(cls) -> ModelCatalog:
        return cls(
            codex=[
                ModelInfo(name="gpt-4o"),
                ModelInfo(name="gpt-4o-mini"),
                ModelInfo(name="gpt-4-turbo"),
                ModelInfo(name="gpt-4"),
                ModelInfo(name="o1", reasoning_levels=_REASONING_LEVELS),
                ModelInfo(name="o1-mini", reasoning_levels=_REASONING_LEVELS),
                ModelInfo(name="o1-preview", reasoning_levels=_REASONING_LEVELS),
                ModelInfo(name="o3-mini", reasoning_levels=_REASONING_LEVELS),
            ],
            claude=[
                ModelInfo(name="claude-sonnet-4-20250514"),
                ModelInfo(name="claude-opus-4-20250514"),
                ModelInfo(name="claude-3-5-sonnet-20241022"),
                ModelInfo(name="claude-3-5-haiku-20241022"),
                ModelInfo(name="claude-3-opus-20240229"),
            ],
            gemini=[
                ModelInfo(name="gemini-2.0-flash"),
                ModelInfo(name="gemini-2.0-flash-thinking"),
                ModelInfo(name="gemini-1.5-pro"),
                ModelInfo(name="gemini-1.5-flash"),
            ],
        )

    @classmethod
    def load(cls, path: str | Path) -> ModelCatalog:
        store = YamlFileStore(path)
        if not store.exists():
            return cls.default()
        return cls.model_validate(store.load_mapping())

    @classmethod
    def refresh(cls, path: str | Path) -> ModelCatalog:
        # Subscription tokens cannot list models; the built-in catalog is authoritative.
        catalog = cls.default()
        catalog.save(path)
        return catalog

    def save(self, path: str | Path) -> None:
        YamlFileStore(path).write(self.model_dump(mode="json"), sort_keys=False)
