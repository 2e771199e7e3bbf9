"""Cost and token estimation.

Both functions are pure: prices come from the static catalog and token
counts fall back to a characters / 4 heuristic when a backend does not
report usage.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from gateway.llm.catalog import get_model
from gateway.models import ChatTurn

CHARS_PER_TOKEN = 4

# Prompt share of a bare token total, as a fraction (40%)
PROMPT_SHARE = (2, 5)


@dataclass(frozen=True)
class TokenEstimate:
    """Estimated token usage for one completion."""

    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens in ``text``: length / 4, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_tokens(turns: Sequence[ChatTurn], response_text: str) -> TokenEstimate:
    """Estimate prompt and completion tokens for a completion.

    One total is estimated over the turn contents and the response joined
    by single spaces, then split 40/60 like ``split_total_tokens``.

    Args:
        turns: Conversation sent to the backend.
        response_text: Text the backend produced.

    Returns:
        TokenEstimate whose total is ceil(len(text) / 4).
    """
    prompt_text = " ".join(turn.content for turn in turns)
    total = estimate_text_tokens(prompt_text + " " + response_text)
    return split_total_tokens(total)


def estimate_cost(backend: str, model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate the cost of a completion in USD.

    Unknown (backend, model) pairs and unpriced models cost zero.

    Raises:
        ValueError: If a token count is negative.
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("token counts must be non-negative")

    entry = get_model(backend, model)
    if entry is None or entry.price is None:
        return 0.0
    return entry.price.estimate(prompt_tokens, completion_tokens)


def split_total_tokens(total_tokens: int) -> TokenEstimate:
    """Split a bare token total 40/60 between prompt and completion."""
    if total_tokens < 0:
        raise ValueError("token counts must be non-negative")
    numerator, denominator = PROMPT_SHARE
    prompt_tokens = total_tokens * numerator // denominator
    return TokenEstimate(prompt_tokens=prompt_tokens, completion_tokens=total_tokens - prompt_tokens)


def estimate_cost_from_total(backend: str, model: str, total_tokens: int) -> float:
    """Estimate cost when only a total token count is known."""
    split = split_total_tokens(total_tokens)
    return estimate_cost(backend, model, split.prompt_tokens, split.completion_tokens)
