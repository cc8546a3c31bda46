"""Token cost estimation for decision calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

FALLBACK_MODEL = "gpt-4o-mini"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


STATIC_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(input_per_1m=2.50, output_per_1m=10.00),
    "gpt-4o-mini": ModelPricing(input_per_1m=0.15, output_per_1m=0.60),
}


def estimate_cost_usd(
    *,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    overrides: str | None = None,
) -> float:
    """Cost of one call: prompt_tokens * input rate + completion_tokens * output rate."""

    pricing = lookup_pricing(provider=provider, model=model, overrides=overrides)
    return (prompt_tokens / 1_000_000) * pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * pricing.output_per_1m


def lookup_pricing(*, provider: str, model: str, overrides: str | None = None) -> ModelPricing:
    """Resolve pricing: configured overrides, then the static table, then the fallback model."""

    raw = overrides if overrides is not None else os.getenv("COACH_PIPELINE_LLM_PRICING", "")
    mapping = _parse_pricing_mapping(raw)
    provider_key = provider.strip().lower()
    model_key = model.strip()
    for key in ((provider_key, model_key), (provider_key, "*"), ("*", model_key), ("*", "*")):
        configured = mapping.get(key)
        if configured is not None:
            return configured

    direct = STATIC_PRICING.get(model_key)
    if direct is not None:
        return direct
    # Dated snapshots such as gpt-4o-mini-2024-07-18 bill at their family rate.
    for known in sorted(STATIC_PRICING, key=len, reverse=True):
        if model_key.startswith(known):
            return STATIC_PRICING[known]
    return STATIC_PRICING[FALLBACK_MODEL]


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `COACH_PIPELINE_LLM_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    - rows with negative or non-numeric prices are ignored
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
