"""Registry of tool schemas known to the protocol layer.

Schemas are looked up by tool id when validating invocations and rendered
back to OpenAI tool definitions when building requests. Registration
happens at startup; lookups during a turn are read-only.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Mapping

from ..orchestration.types import ToolSchema

__all__ = [
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolSchemaRegistry",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class ToolSchemaRegistry:
    """Lookup table of :class:`ToolSchema` records keyed by tool id.

    Example:
        registry = ToolSchemaRegistry()
        registry.register(ToolSchema(tool_id="read_file", parameters=(...)))
        schema = registry.get("read_file")
    """

    def __init__(self, schemas: Iterable[ToolSchema] = ()) -> None:
        self._schemas: dict[str, ToolSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ToolSchema, *, allow_override: bool = False) -> ToolSchema:
        """Register ``schema``.

        Raises:
            DuplicateToolError: If the tool id is taken and ``allow_override`` is False.
        """
        if schema.tool_id in self._schemas and not allow_override:
            raise DuplicateToolError(schema.tool_id)
        self._schemas[schema.tool_id] = schema
        LOGGER.debug("Registered tool schema: %s (%d parameters)", schema.tool_id, len(schema.parameters))
        return schema

    def register_openai_tools(
        self,
        definitions: Iterable[Mapping[str, Any]],
        *,
        allow_override: bool = False,
    ) -> list[ToolSchema]:
        """Register every OpenAI function-tool definition in ``definitions``."""

        return [
            self.register(ToolSchema.from_openai_tool(definition), allow_override=allow_override)
            for definition in definitions
        ]

    def unregister(self, tool_id: str) -> bool:
        return self._schemas.pop(tool_id, None) is not None

    def find(self, tool_id: str | None) -> ToolSchema | None:
        """Return the schema for ``tool_id`` (exact, then case-insensitive) or ``None``."""

        if not tool_id:
            return None
        schema = self._schemas.get(tool_id)
        if schema is not None:
            return schema
        lowered = tool_id.strip().lower()
        for name, candidate in self._schemas.items():
            if name.lower() == lowered:
                return candidate
        return None

    def get(self, tool_id: str) -> ToolSchema:
        schema = self.find(tool_id)
        if schema is None:
            raise ToolNotFoundError(tool_id)
        return schema

    def names(self) -> list[str]:
        return sorted(self._schemas)

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [self._schemas[name].to_openai_tool() for name in self.names()]

    def __contains__(self, tool_id: object) -> bool:
        return isinstance(tool_id, str) and self.find(tool_id) is not None

    def __iter__(self) -> Iterator[ToolSchema]:
        return iter([self._schemas[name] for name in self.names()])

    def __len__(self) -> int:
        return len(self._schemas)
