"""Static model catalog: display names, tier entitlements and prices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

TIER_ORDER: tuple[str, ...] = ("free", "plus", "pro", "enterprise")


def tier_rank(tier: str) -> int:
    """Rank of a subscription tier; unknown tiers rank as the lowest."""
    try:
        return TIER_ORDER.index(tier.lower())
    except ValueError:
        return 0


@dataclass(frozen=True)
class ModelPrice:
    """Token pricing for a model (USD per 1000 tokens)."""

    prompt_per_1k: float
    completion_per_1k: float

    def estimate(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Cost of a given token usage in USD."""
        return (prompt_tokens / 1000) * self.prompt_per_1k + (
            completion_tokens / 1000
        ) * self.completion_per_1k


@dataclass(frozen=True)
class CatalogModel:
    """One model a backend can serve."""

    backend: str
    model: str
    display_name: str
    min_tier: str = "free"
    price: Optional[ModelPrice] = None

    def available_to(self, tier: str) -> bool:
        """Whether ``tier`` is entitled to this model."""
        return tier_rank(tier) >= tier_rank(self.min_tier)


MODEL_CATALOG: tuple[CatalogModel, ...] = (
    # OpenAI
    CatalogModel("openai", "gpt-3.5-turbo", "GPT-3.5 Turbo", "free", ModelPrice(0.0005, 0.0015)),
    CatalogModel("openai", "gpt-4", "GPT-4", "plus", ModelPrice(0.03, 0.06)),
    CatalogModel("openai", "gpt-4-turbo", "GPT-4 Turbo", "plus", ModelPrice(0.01, 0.03)),
    CatalogModel("openai", "gpt-4o", "GPT-4o", "pro", ModelPrice(0.005, 0.015)),
    # Anthropic
    CatalogModel(
        "anthropic", "claude-3-haiku-20240307", "Claude 3 Haiku", "plus", ModelPrice(0.00025, 0.00125)
    ),
    CatalogModel(
        "anthropic", "claude-3-sonnet-20240229", "Claude 3 Sonnet", "plus", ModelPrice(0.003, 0.015)
    ),
    CatalogModel(
        "anthropic", "claude-3-opus-20240229", "Claude 3 Opus", "pro", ModelPrice(0.015, 0.075)
    ),
    # Google
    CatalogModel("google", "gemini-pro", "Gemini Pro", "free", ModelPrice(0.0005, 0.0015)),
    # Groq
    CatalogModel("groq", "mixtral-8x7b-32768", "Mixtral 8x7B", "plus", ModelPrice(0.0005, 0.0005)),
    CatalogModel("groq", "llama3-70b-8192", "Llama 3 70B", "pro", ModelPrice(0.001, 0.001)),
    # In-process mock, never billed
    CatalogModel("mock", "mock-deterministic", "Mock (deterministic)", "free"),
)

_BY_KEY: dict[tuple[str, str], CatalogModel] = {(m.backend, m.model): m for m in MODEL_CATALOG}


def get_model(backend: str, model: str) -> Optional[CatalogModel]:
    """Look up a catalog entry by backend and model id."""
    return _BY_KEY.get((backend, model))


def list_models(
    tier: Optional[str] = None,
    backends: Optional[Sequence[str]] = None,
) -> list[CatalogModel]:
    """List catalog models, optionally filtered by tier entitlement and backend."""
    results: list[CatalogModel] = []
    for model in MODEL_CATALOG:
        if tier is not None and not model.available_to(tier):
            continue
        if backends is not None and model.backend not in backends:
            continue
        results.append(model)
    return results
