"""Known parameter-name aliases per tool.

Models routinely call ``read_file`` with ``path`` instead of ``file_path`` or
``copy_file`` with ``src``/``dest``. The table maps those well-known
misspellings to the declared parameter names; the validator consults it
after an exact match fails and before falling back to fuzzy matching.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

__all__ = ["DEFAULT_ALIASES", "ParameterAliasTable"]

_FILE_PATH_ALIASES = {
    "path": "file_path",
    "filepath": "file_path",
    "filename": "file_path",
    "file": "file_path",
}
_TRANSFER_ALIASES = {
    "source": "source_path",
    "src": "source_path",
    "from": "source_path",
    "destination": "destination_path",
    "dest": "destination_path",
    "dst": "destination_path",
    "to": "destination_path",
    "target": "destination_path",
}

DEFAULT_ALIASES: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {
        "read_file": dict(_FILE_PATH_ALIASES),
        "write_file": {
            **_FILE_PATH_ALIASES,
            "data": "content",
            "text": "content",
            "body": "content",
            "contents": "content",
        },
        "copy_file": dict(_TRANSFER_ALIASES),
        "move_file": dict(_TRANSFER_ALIASES),
        "delete_file": dict(_FILE_PATH_ALIASES),
        "list_directory": {
            "directory": "path",
            "dir": "path",
            "folder": "path",
            "location": "path",
        },
        "create_directory": {
            "directory": "path",
            "dir": "path",
            "folder": "path",
            "name": "path",
        },
    }
)


class ParameterAliasTable:
    """Case-insensitive ``tool -> alias -> declared name`` lookup."""

    def __init__(self, aliases: Mapping[str, Mapping[str, str]] | None = None) -> None:
        source = DEFAULT_ALIASES if aliases is None else aliases
        self._aliases: dict[str, dict[str, str]] = {
            tool.lower(): {alias.lower(): target for alias, target in table.items()}
            for tool, table in source.items()
        }

    def register(self, tool_id: str, aliases: Mapping[str, str]) -> None:
        table = self._aliases.setdefault(tool_id.lower(), {})
        table.update({alias.lower(): target for alias, target in aliases.items()})

    def resolve(self, tool_id: str, name: str) -> str | None:
        """Return the declared parameter ``name`` is an alias for, if any."""

        return self._aliases.get(tool_id.lower(), {}).get(name.lower())

    def aliases_for(self, tool_id: str) -> Mapping[str, str]:
        return MappingProxyType(dict(self._aliases.get(tool_id.lower(), {})))
