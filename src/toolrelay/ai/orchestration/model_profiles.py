"""Per-model-family parsing profiles.

Each model family has habits: Qwen wraps calls in ``<tool_call>`` tags and
thinks out loud, DeepSeek emits ``<|tool_calls_begin|>`` markers, Claude
prefers ``<tool_use>``. Rather than a parser subclass per family, a
:class:`ModelProfile` is a plain record of which extraction strategies to
try (in order), which tags delimit calls, and which reasoning tags to
strip from display text. Profiles are looked up by model-name prefix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

__all__ = [
    "DEFAULT_PROFILE",
    "ExtractionStrategy",
    "ModelProfile",
    "ModelProfileRegistry",
    "default_profiles",
]

LOGGER = logging.getLogger(__name__)


class ExtractionStrategy:
    """Names of the extraction stages, in their natural precedence."""

    TAGGED = "tagged"
    FENCED = "fenced"
    WRAPPER = "wrapper"
    BARE = "bare"

    ALL: tuple[str, ...] = (TAGGED, FENCED, WRAPPER, BARE)


_DEFAULT_CALL_TAGS: tuple[str, ...] = ("tool_call", "tool_use", "function_call")
_DEFAULT_REASONING_TAGS: tuple[str, ...] = (
    "think",
    "thinking",
    "thought",
    "reflection",
    "reasoning",
    "internal",
)


@dataclass(slots=True, frozen=True)
class ModelProfile:
    """Parsing habits of one model family.

    Attributes:
        name: Family label used in logs.
        prefixes: Lower-case model-name prefixes that select this profile.
        strategies: Extraction stages to try, first success wins.
        call_tags: Tag names that delimit a tool-call payload.
        marker_blocks: Whether ``<|tool_calls_begin|>`` style markers are recognized.
        reasoning_tags: Tags whose content is removed from display text.
        native_tool_calls: Whether the family streams structured tool calls.
    """

    name: str
    prefixes: tuple[str, ...] = ()
    strategies: tuple[str, ...] = ExtractionStrategy.ALL
    call_tags: tuple[str, ...] = _DEFAULT_CALL_TAGS
    marker_blocks: bool = True
    reasoning_tags: tuple[str, ...] = _DEFAULT_REASONING_TAGS
    native_tool_calls: bool = True

    def __post_init__(self) -> None:
        unknown = [item for item in self.strategies if item not in ExtractionStrategy.ALL]
        if unknown:
            raise ValueError(f"Unknown extraction strategies for profile '{self.name}': {unknown}")
        if not self.strategies:
            raise ValueError(f"Profile '{self.name}' must enable at least one strategy")

    def match_length(self, model: str) -> int:
        """Length of the longest prefix matching ``model`` (0 when none match)."""

        return max((len(prefix) for prefix in self.prefixes if model.startswith(prefix)), default=0)


# The fallback accepts every convention so unknown models still parse.
DEFAULT_PROFILE = ModelProfile(name="default")


def default_profiles() -> tuple[ModelProfile, ...]:
    return (
        ModelProfile(
            name="qwen",
            prefixes=("qwen", "qwq"),
            call_tags=("tool_call",) + tuple(tag for tag in _DEFAULT_CALL_TAGS if tag != "tool_call"),
        ),
        ModelProfile(
            name="deepseek",
            prefixes=("deepseek",),
            strategies=(ExtractionStrategy.TAGGED, ExtractionStrategy.FENCED, ExtractionStrategy.BARE),
        ),
        ModelProfile(name="llama", prefixes=("llama", "codellama")),
        ModelProfile(
            name="mistral",
            prefixes=("mistral", "mixtral", "codestral", "devstral"),
            strategies=(ExtractionStrategy.TAGGED, ExtractionStrategy.FENCED, ExtractionStrategy.BARE),
            marker_blocks=False,
        ),
        ModelProfile(
            name="gpt",
            prefixes=("gpt", "o1", "o3", "o4", "chatgpt"),
            strategies=(ExtractionStrategy.FENCED, ExtractionStrategy.WRAPPER, ExtractionStrategy.BARE),
            marker_blocks=False,
        ),
        ModelProfile(
            name="claude",
            prefixes=("claude",),
            strategies=(ExtractionStrategy.TAGGED, ExtractionStrategy.FENCED, ExtractionStrategy.BARE),
            call_tags=("tool_use", "function_call", "tool_call"),
            marker_blocks=False,
        ),
        ModelProfile(
            name="gemini",
            prefixes=("gemini",),
            strategies=(ExtractionStrategy.FENCED, ExtractionStrategy.WRAPPER, ExtractionStrategy.BARE),
            marker_blocks=False,
        ),
        ModelProfile(
            name="gemma",
            prefixes=("gemma",),
            strategies=(ExtractionStrategy.FENCED, ExtractionStrategy.WRAPPER, ExtractionStrategy.BARE),
            marker_blocks=False,
            native_tool_calls=False,
        ),
        ModelProfile(
            name="phi",
            prefixes=("phi",),
            strategies=(ExtractionStrategy.FENCED, ExtractionStrategy.WRAPPER, ExtractionStrategy.BARE),
            marker_blocks=False,
            native_tool_calls=False,
        ),
    )


class ModelProfileRegistry:
    """Prefix-keyed lookup table of :class:`ModelProfile` records."""

    def __init__(
        self,
        profiles: Iterable[ModelProfile] | None = None,
        *,
        default: ModelProfile = DEFAULT_PROFILE,
    ) -> None:
        self._profiles: list[ModelProfile] = list(default_profiles() if profiles is None else profiles)
        self._default = default

    @property
    def default(self) -> ModelProfile:
        return self._default

    def register(self, profile: ModelProfile) -> None:
        """Add ``profile``; a later registration wins ties against earlier ones."""

        self._profiles.insert(0, profile)

    def profiles(self) -> tuple[ModelProfile, ...]:
        return tuple(self._profiles)

    def resolve(self, model: str | None) -> ModelProfile:
        """Return the profile with the longest prefix matching ``model``.

        Vendor namespaces such as ``Qwen/`` or ``meta-llama/`` are ignored and
        matching is case-insensitive. Unknown models get the default profile.
        """

        key = _normalize_model_name(model)
        if not key:
            return self._default
        best: ModelProfile | None = None
        best_length = 0
        for profile in self._profiles:
            length = profile.match_length(key)
            if length > best_length:
                best, best_length = profile, length
        if best is None:
            LOGGER.debug("No parsing profile for model %s; using %s", model, self._default.name)
            return self._default
        return best


def _normalize_model_name(model: str | None) -> str:
    name = (model or "").strip().lower()
    if "/" in name:
        name = name.rsplit("/", 1)[-1]
    # Ollama style size tags: "qwen2.5:7b"
    return name.split(":", 1)[0]
