from __future__ import annotations

from enum import Enum

_ALIASES: dict[str, str] = {
    "codex": "codex",
    "openai": "codex",
    "gpt": "codex",
    "chatgpt": "codex",
    "claude": "claude",
    "anthropic": "claude",
    "gemini": "gemini",
    "google": "gemini",
}


class Provider(str, Enum):
    CODEX = "codex"
    CLAUDE = "claude"
    GEMINI = "gemini"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> Provider:
        canonical = _ALIASES.get(value.strip().lower())
        if canonical is None:
            raise ValueError(
                f"Unknown provider: {value}. Use: codex, claude, or gemini"
            )
        return cls(canonical)

    def matches_model(self, model: str) -> bool:
        """Return True when the model name looks like one of this provider's models."""
        name = model.strip().lower()
        if self is Provider.CODEX:
            return (
                "gpt" in name
                or "codex" in name
                or name.startswith("o1")
                or name.startswith("o3")
            )
        if self is Provider.CLAUDE:
            return any(token in name for token in ("claude", "opus", "sonnet", "haiku"))
        return "gemini" in name or "flash" in name or ("pro" in name and "gpt" not in name)
