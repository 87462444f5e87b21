"""ToolRelay: tool-call extraction, validation, and conversation history for LLM agents."""

__version__ = "0.3.0"

__all__ = ["__version__"]
