"""Helpers shared by the tool-call protocol layer."""

from .json_tools import (
    JsonRepairError,
    balanced_object_spans,
    canonical_json,
    is_complete_json,
    lenient_loads,
    lenient_object,
)
from .tokens import CHARS_PER_TOKEN, estimate_tokens

__all__ = [
    "CHARS_PER_TOKEN",
    "JsonRepairError",
    "balanced_object_spans",
    "canonical_json",
    "estimate_tokens",
    "is_complete_json",
    "lenient_loads",
    "lenient_object",
]
