from __future__ import annotations

from typing import Callable

from omniproxy.providers import Provider

# Evaluated top to bottom; the first matching predicate wins. The predicates
# overlap (e.g. "gpt-4-pro" also matches the gemini rule), so the order here is
# part of the routing contract.
CLASSIFICATION_ORDER: tuple[tuple[Callable[[str], bool], Provider], ...] = (
    (Provider.CODEX.matches_model, Provider.CODEX),
    (Provider.CLAUDE.matches_model, Provider.CLAUDE),
    (Provider.GEMINI.matches_model, Provider.GEMINI),
)


def classify_model(model: str) -> Provider | None:
    for predicate, provider in CLASSIFICATION_ORDER:
        if predicate(model):
            return provider
    return None
