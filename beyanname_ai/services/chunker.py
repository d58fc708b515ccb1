"""
chunker.py
~~~~~~~~~~
Deterministic splitting of oversized analysis payloads.

Cost model: every whitespace-delimited token costs ``len(token) / 4`` units,
a rough stand-in for provider tokens. Parts are packed greedily, a token is
never split, and a token that alone exceeds the budget gets a part of its own.
"""
from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN: int = 4
PART_DELIMITER: str = " "


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class EmptyPayloadError(ValueError):
    """Raised when there is nothing to analyse."""


def serialize_payload(payload: Any) -> str:
    """
    Render a job payload as the text sent to the provider.
    Strings pass through untouched; JSON values are pretty-printed so the
    text has whitespace boundaries to split on.
    """
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, indent=2)


def token_cost(token: str) -> float:
    return len(token) / CHARS_PER_TOKEN


def estimate_cost(text: str) -> float:
    return sum(token_cost(t) for t in text.split())


def requires_chunking(text: str, budget: int) -> bool:
    return estimate_cost(text) > budget


def split_payload(text: str, budget: int) -> list[str]:
    """
    Split ``text`` into parts whose cost stays within ``budget``.

    Returns ``[text]`` unchanged when the whole payload fits.

    Raises:
        EmptyPayloadError: text has no tokens.
        ValueError:        budget is not positive.
    """
    if budget <= 0:
        raise ValueError(f"budget must be positive, got {budget}")

    tokens = text.split()
    if not tokens:
        raise EmptyPayloadError("Payload contains no tokens.")

    if estimate_cost(text) <= budget:
        return [text]

    parts: list[str] = []
    current: list[str] = []
    current_cost = 0.0
    for token in tokens:
        cost = token_cost(token)
        if current and current_cost + cost > budget:
            parts.append(PART_DELIMITER.join(current))
            current = []
            current_cost = 0.0
        current.append(token)
        current_cost += cost
    if current:
        parts.append(PART_DELIMITER.join(current))

    logger.info(f"Payload split into {len(parts)} parts (budget {budget}, {len(tokens)} tokens).")
    return parts
