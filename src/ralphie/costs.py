"""Token cost estimation for providers that report usage without a price."""

from __future__ import annotations

from typing import Mapping

# USD per one million tokens.
DEFAULT_PRICING: dict[str, dict[str, float]] = {
    "claude-sonnet": {"input": 3.0, "output": 15.0},
    "claude-opus": {"input": 15.0, "output": 75.0},
    "claude-haiku": {"input": 0.25, "output": 1.25},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "o1": {"input": 15.0, "output": 60.0},
    "o1-mini": {"input": 3.0, "output": 12.0},
}
FALLBACK_PRICING_KEY = "claude-sonnet"

# Ordered so that the more specific name wins.
_MODEL_ALIASES: tuple[tuple[str, str], ...] = (
    ("sonnet", "claude-sonnet"),
    ("opus", "claude-opus"),
    ("haiku", "claude-haiku"),
    ("gpt-4o-mini", "gpt-4o-mini"),
    ("gpt-4o", "gpt-4o"),
    ("o1-mini", "o1-mini"),
    ("o1", "o1"),
)


def normalize_model_name(model: str | None) -> str:
    lowered = (model or "").strip().lower()
    for needle, key in _MODEL_ALIASES:
        if needle in lowered:
            return key
    return lowered or FALLBACK_PRICING_KEY


def resolve_pricing(
    model: str | None,
    overrides: Mapping[str, Mapping[str, float]] | None = None,
) -> dict[str, float]:
    pricing = {**DEFAULT_PRICING, **{key: dict(value) for key, value in (overrides or {}).items()}}
    if model and model in pricing:
        return dict(pricing[model])
    key = normalize_model_name(model)
    return dict(pricing.get(key, pricing[FALLBACK_PRICING_KEY]))


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    model: str | None = None,
    pricing: Mapping[str, Mapping[str, float]] | None = None,
) -> float:
    rates = resolve_pricing(model, pricing)
    return (input_tokens / 1_000_000) * rates["input"] + (output_tokens / 1_000_000) * rates["output"]


def format_cost(input_tokens: int, output_tokens: int, cost_usd: float) -> str:
    return f"tokens: {input_tokens:,} in / {output_tokens:,} out | cost: ${cost_usd:.4f}"
