"""Token estimation utilities for history budgeting."""

from __future__ import annotations

# Integer characters-per-token ratio used for every budget decision.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate the number of tokens in ``text``.

    The estimate is ``len(text) // 4``. It deliberately ignores encoding so
    that the same text always costs the same budget regardless of model.
    """
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


__all__ = ["CHARS_PER_TOKEN", "estimate_tokens"]
