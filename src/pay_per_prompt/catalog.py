"""Model catalog and token pricing.

Prices are USD per million tokens; 1 MNEE is treated as 1 USD. All
arithmetic is done in ``Decimal`` so ledger balances never drift.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from pay_per_prompt.errors import UnknownModelError
from pay_per_prompt.utils.constants import (
    CHARS_PER_TOKEN,
    DEFAULT_MODEL_ID,
    MIN_ESTIMATE_INPUT_TOKENS,
    MIN_ESTIMATE_OUTPUT_TOKENS,
    MINIMUM_BALANCE_FLOOR,
    PLATFORM_MARGIN,
    TOKENS_PER_MILLION,
    ModelTier,
    Provider,
)


@dataclass(frozen=True)
class ModelConfig:
    """Immutable catalog entry."""

    id: str
    name: str
    provider: Provider
    upstream_model_id: str
    input_price_per_million: Decimal
    output_price_per_million: Decimal
    max_output_tokens: int
    context_window: int
    description: str = ""
    tier: ModelTier = ModelTier.STANDARD

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "upstream_model_id": self.upstream_model_id,
            "input_price_per_million": str(self.input_price_per_million),
            "output_price_per_million": str(self.output_price_per_million),
            "max_output_tokens": self.max_output_tokens,
            "context_window": self.context_window,
            "description": self.description,
            "tier": self.tier.value,
        }


def _model(
    id: str,
    name: str,
    provider: Provider,
    upstream_model_id: str,
    input_price: str,
    output_price: str,
    max_output_tokens: int,
    context_window: int,
    description: str,
    tier: ModelTier,
) -> ModelConfig:
    return ModelConfig(
        id=id,
        name=name,
        provider=provider,
        upstream_model_id=upstream_model_id,
        input_price_per_million=Decimal(input_price),
        output_price_per_million=Decimal(output_price),
        max_output_tokens=max_output_tokens,
        context_window=context_window,
        description=description,
        tier=tier,
    )


_MODELS = [
    # Groq (open-weight models, cheapest)
    _model("groq-llama-70b", "Llama 3.3 70B", Provider.GROQ, "llama-3.3-70b-versatile",
           "0.59", "0.79", 8192, 128_000,
           "Fast & affordable. Great for general tasks.", ModelTier.BUDGET),
    _model("groq-llama-8b", "Llama 3.1 8B", Provider.GROQ, "llama-3.1-8b-instant",
           "0.05", "0.08", 8192, 128_000,
           "Ultra-fast, ultra-cheap. Simple tasks.", ModelTier.BUDGET),
    # Google Gemini
    _model("gemini-2.5-pro", "Gemini 2.5 Pro", Provider.GOOGLE, "gemini-2.5-pro",
           "1.25", "10.00", 8192, 1_000_000,
           "Google's flagship. Excellent reasoning.", ModelTier.STANDARD),
    _model("gemini-2.5-flash", "Gemini 2.5 Flash", Provider.GOOGLE, "gemini-2.5-flash",
           "0.15", "0.60", 8192, 1_000_000,
           "Fast Gemini variant. Good balance.", ModelTier.BUDGET),
    _model("gemini-3-pro", "Gemini 3 Pro", Provider.GOOGLE, "gemini-3-pro-preview",
           "2.00", "12.00", 8192, 1_000_000,
           "Latest Gemini. State-of-the-art.", ModelTier.PREMIUM),
    # Anthropic Claude
    _model("claude-sonnet-4", "Claude Sonnet 4", Provider.ANTHROPIC, "claude-sonnet-4-20250514",
           "3.00", "15.00", 8192, 200_000,
           "Balanced Claude. Great for coding.", ModelTier.STANDARD),
    _model("claude-opus-4", "Claude Opus 4", Provider.ANTHROPIC, "claude-opus-4-20250514",
           "15.00", "75.00", 8192, 200_000,
           "Most powerful Claude. Complex reasoning.", ModelTier.PREMIUM),
    _model("claude-haiku-3.5", "Claude Haiku 3.5", Provider.ANTHROPIC, "claude-3-5-haiku-20241022",
           "0.80", "4.00", 8192, 200_000,
           "Fast & cheap Claude. Quick tasks.", ModelTier.BUDGET),
    # xAI Grok
    _model("grok-4", "Grok 4", Provider.XAI, "grok-4",
           "3.00", "15.00", 16384, 256_000,
           "xAI flagship. Strong reasoning & code.", ModelTier.STANDARD),
    _model("grok-3-fast", "Grok 3 Fast", Provider.XAI, "grok-3-fast",
           "0.20", "0.50", 16384, 128_000,
           "Ultra cheap xAI model. Very fast.", ModelTier.BUDGET),
]

MODEL_CATALOG: dict[str, ModelConfig] = {m.id: m for m in _MODELS}


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def get_model(model_id: str | None, default_id: str = DEFAULT_MODEL_ID) -> ModelConfig:
    """Resolve a model id (or the default when omitted).

    Raises UnknownModelError for ids not in the catalog.
    """
    resolved = model_id or default_id
    model = MODEL_CATALOG.get(resolved)
    if model is None:
        raise UnknownModelError(resolved)
    return model


def models_by_provider(provider: Provider | str) -> list[ModelConfig]:
    return [m for m in _MODELS if m.provider == Provider(provider)]


def models_by_tier(tier: ModelTier | str) -> list[ModelConfig]:
    return [m for m in _MODELS if m.tier == ModelTier(tier)]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def calculate_cost(model: ModelConfig, input_tokens: int, output_tokens: int) -> Decimal:
    """Cost in MNEE for the given usage, including the platform margin.

    ``((in / 1M) * in_price + (out / 1M) * out_price) * 1.20``
    """
    input_cost = (Decimal(input_tokens) / TOKENS_PER_MILLION) * model.input_price_per_million
    output_cost = (Decimal(output_tokens) / TOKENS_PER_MILLION) * model.output_price_per_million
    return (input_cost + output_cost) * PLATFORM_MARGIN


def estimate_min_cost(model: ModelConfig) -> Decimal:
    """Conservative minimum cost used for the pre-dispatch balance check."""
    return calculate_cost(model, MIN_ESTIMATE_INPUT_TOKENS, MIN_ESTIMATE_OUTPUT_TOKENS)


def minimum_balance(model: ModelConfig) -> Decimal:
    """Suggested minimum balance to show a user before they prompt."""
    return max(MINIMUM_BALANCE_FLOOR, estimate_min_cost(model))


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
