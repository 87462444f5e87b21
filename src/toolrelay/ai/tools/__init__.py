"""Tool schema registration."""

from .registry import DuplicateToolError, ToolNotFoundError, ToolSchemaRegistry

__all__ = ["DuplicateToolError", "ToolNotFoundError", "ToolSchemaRegistry"]
