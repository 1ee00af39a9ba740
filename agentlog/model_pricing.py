"""Model pricing registry and token/cost estimation."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional

CHARS_PER_TOKEN = 4
EXTENDED_CONTEXT_THRESHOLD = 200_000

_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")


@dataclass(frozen=True)
class ModelPricing:
    model_id: str
    provider: str
    input_price_per_1m: float
    output_price_per_1m: float
    extended_input_price_per_1m: Optional[float] = None
    extended_output_price_per_1m: Optional[float] = None

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        extended = input_tokens > EXTENDED_CONTEXT_THRESHOLD
        input_price = self.input_price_per_1m
        output_price = self.output_price_per_1m
        if extended and self.extended_input_price_per_1m is not None:
            input_price = self.extended_input_price_per_1m
        if extended and self.extended_output_price_per_1m is not None:
            output_price = self.extended_output_price_per_1m
        return (input_tokens / 1_000_000 * input_price) + (output_tokens / 1_000_000 * output_price)


_REGISTRY: tuple[ModelPricing, ...] = (
    ModelPricing("claude-opus-4-5", "anthropic", 5.0, 25.0),
    ModelPricing("claude-opus-4-1", "anthropic", 15.0, 75.0),
    ModelPricing("claude-opus-4", "anthropic", 15.0, 75.0),
    ModelPricing("claude-sonnet-4-5", "anthropic", 3.0, 15.0, 6.0, 22.5),
    ModelPricing("claude-sonnet-4", "anthropic", 3.0, 15.0, 6.0, 22.5),
    ModelPricing("claude-haiku-4-5", "anthropic", 1.0, 5.0),
    ModelPricing("claude-3-7-sonnet", "anthropic", 3.0, 15.0),
    ModelPricing("claude-3-5-sonnet", "anthropic", 3.0, 15.0),
    ModelPricing("claude-3-5-haiku", "anthropic", 0.8, 4.0),
    ModelPricing("claude-3-opus", "anthropic", 15.0, 75.0),
    ModelPricing("claude-3-haiku", "anthropic", 0.25, 1.25),
    ModelPricing("gpt-5-codex", "openai", 1.25, 10.0),
    ModelPricing("gpt-5-mini", "openai", 0.25, 2.0),
    ModelPricing("gpt-5-nano", "openai", 0.05, 0.4),
    ModelPricing("gpt-5", "openai", 1.25, 10.0),
    ModelPricing("gpt-4.1-mini", "openai", 0.4, 1.6),
    ModelPricing("gpt-4.1", "openai", 2.0, 8.0),
    ModelPricing("gpt-4o-mini", "openai", 0.15, 0.6),
    ModelPricing("gpt-4o", "openai", 2.5, 10.0),
    ModelPricing("o4-mini", "openai", 1.1, 4.4),
    ModelPricing("o3", "openai", 2.0, 8.0),
    ModelPricing("gemini-2.5-pro", "google", 1.25, 10.0, 2.5, 15.0),
    ModelPricing("gemini-2.5-flash", "google", 0.3, 2.5),
    ModelPricing("grok-code-fast", "xai", 0.2, 1.5),
    ModelPricing("kimi-k2", "moonshot", 0.6, 2.5),
    ModelPricing("qwen3-coder", "alibaba", 0.45, 1.8),
    ModelPricing("glm-4.6", "zhipu", 0.6, 2.2),
)
_BY_LENGTH = sorted(_REGISTRY, key=lambda item: len(item.model_id), reverse=True)


def _normalize_model(raw_model: str) -> str:
    token = (raw_model or "").strip().lower()
    if "/" in token:
        token = token.rsplit("/", 1)[-1]
    token = token.replace("_", "-").replace(" ", "-")
    return _DATE_SUFFIX_PATTERN.sub("", token)


def lookup(raw_model: str | None) -> ModelPricing | None:
    """Find pricing by exact id, then by substring containment in either direction."""
    name = _normalize_model(raw_model or "")
    if not name:
        return None
    for entry in _REGISTRY:
        if entry.model_id == name:
            return entry
    for entry in _BY_LENGTH:
        if entry.model_id in name or name in entry.model_id:
            return entry
    return None


def provider_for(raw_model: str | None) -> str | None:
    entry = lookup(raw_model)
    if entry:
        return entry.provider
    token = _normalize_model(raw_model or "")
    if token.startswith("claude"):
        return "anthropic"
    if token.startswith(("gpt", "o1", "o3", "o4", "codex")):
        return "openai"
    if token.startswith("gemini"):
        return "google"
    return None


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_cost(raw_model: str | None, input_tokens: int, output_tokens: int) -> float | None:
    """Return the USD estimate, or ``None`` when the model is unknown."""
    entry = lookup(raw_model)
    if entry is None:
        return None
    return entry.calculate_cost(max(0, input_tokens), max(0, output_tokens))
