"""Runtime settings: the dataclass, a JSON file store and ``TOOLRELAY_*`` overrides.

Precedence, lowest first: dataclass defaults, the settings file, caller
overrides passed to :meth:`SettingsStore.load`, environment variables.
The API key never touches disk in clear text; :class:`SecretVault` stores
it as a Fernet token next to the settings file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "ENV_PREFIX",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "environment_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "TOOLRELAY_"
SETTINGS_VERSION = 1

_CONFIG_HOME = Path.home() / ".toolrelay"
_CIPHERTEXT_KEY = "api_key_ciphertext"
_TRUTHY = frozenset({"1", "true", "yes", "on", "debug"})


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUTHY


def _parse_int(raw: str) -> int:
    return int(raw.strip(), 10)


# Field name -> parser for its environment variable (``TOOLRELAY_<FIELD>``).
_ENV_FIELDS: Mapping[str, Callable[[str], Any]] = {
    "api_key": str,
    "base_url": str,
    "model": str,
    "organization": str,
    "system_prompt": str,
    "temperature": float,
    "request_timeout": float,
    "max_retries": _parse_int,
    "max_tokens": _parse_int,
    "compression_threshold": _parse_int,
    "keep_recent": _parse_int,
    "max_tool_result_chars": _parse_int,
    "limit_tool_output": _parse_bool,
    "debug_logging": _parse_bool,
}


@dataclass(slots=True)
class Settings:
    """Model endpoint, retry policy and conversation budget.

    ``compression_threshold`` and ``max_tokens`` are estimated tokens;
    ``max_tool_result_chars`` caps every stored tool result.
    ``tool_output_limits`` overrides the built-in per-tool output ceilings.
    """

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    system_prompt: str = ""
    max_tokens: int = 12_000
    compression_threshold: int = 10_000
    keep_recent: int = 10
    max_tool_result_chars: int = 3_000
    limit_tool_output: bool = True
    tool_output_limits: dict[str, int] = field(default_factory=dict)
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(item.name for item in fields(cls))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Settings":
        """Build settings from ``payload``, ignoring keys that are not fields."""

        known = cls.field_names()
        unknown = sorted(key for key in payload if key not in known)
        if unknown:
            LOGGER.debug("Ignoring unknown settings keys: %s", unknown)
        return cls(**{key: value for key, value in payload.items() if key in known})

    def budget_warnings(self) -> list[str]:
        problems: list[str] = []
        if self.compression_threshold > self.max_tokens:
            problems.append(
                f"compression_threshold ({self.compression_threshold}) exceeds max_tokens ({self.max_tokens})"
            )
        if self.keep_recent < 1:
            problems.append(f"keep_recent must be positive, got {self.keep_recent}")
        return problems


def _write_atomic(path: Path, data: bytes, *, private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_bytes(data)
    if private and os.name != "nt":  # pragma: no cover - POSIX only
        os.chmod(staging, 0o600)
    staging.replace(path)


class SecretVault:
    """Fernet encryption for the stored API key.

    Tokens look like ``fernet:<token>``. The key file is created on first
    use with owner-only permissions.
    """

    scheme = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_CONFIG_HOME / "settings.key")
        self._cipher: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.scheme}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the secret inside ``token``.

        Tokens with a foreign scheme decode to ``""``. A token that does not
        match the current key raises ``ValueError``.
        """

        if not token:
            return ""
        scheme, _, body = token.partition(":")
        if scheme != self.scheme or not body:
            LOGGER.warning("Ignoring stored secret with unsupported scheme %r", scheme or None)
            return ""
        try:
            return self._fernet().decrypt(body.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("stored secret does not match the vault key") from exc

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _write_atomic(self._key_path, key, private=True)
                LOGGER.info("Created settings key at %s", self._key_path)
            self._cipher = Fernet(key)
        return self._cipher


class SettingsStore:
    """Reads and writes :class:`Settings` as a versioned JSON document."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_CONFIG_HOME / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the stored settings with caller, then environment, overrides applied."""

        document = self._read_document()
        ciphertext = document.pop(_CIPHERTEXT_KEY, None)
        version = document.pop("version", None)
        if version not in (None, SETTINGS_VERSION):
            LOGGER.info("Settings file %s is version %s; reading it as version %s", self._path, version, SETTINGS_VERSION)
        document.pop("api_key", None)
        settings = Settings.from_mapping(document)

        if ciphertext:
            try:
                settings = replace(settings, api_key=self._vault.decrypt(ciphertext))
            except ValueError as exc:
                LOGGER.warning("Dropping stored API key: %s", exc)

        settings = _merge(settings, overrides or {}, source="caller")
        settings = _merge(settings, environment_overrides(), source="environment")
        for problem in settings.budget_warnings():
            LOGGER.warning("Settings check: %s", problem)
        return settings

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically; the API key is stored encrypted."""

        document = asdict(settings)
        secret = document.pop("api_key", "")
        if secret:
            document[_CIPHERTEXT_KEY] = self._vault.encrypt(secret)
        document["version"] = SETTINGS_VERSION
        _write_atomic(self._path, json.dumps(document, indent=2, sort_keys=True).encode("utf-8"))
        LOGGER.debug("Saved settings to %s (model=%s)", self._path, settings.model)
        return self._path

    def _read_document(self) -> Dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        if not isinstance(document, dict):
            LOGGER.warning("Ignoring settings file %s: expected a JSON object", self._path)
            return {}
        return document


def environment_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Parse ``TOOLRELAY_<FIELD>`` variables; unparsable values are logged and skipped."""

    source = os.environ if environ is None else environ
    parsed: Dict[str, Any] = {}
    for name, parse in _ENV_FIELDS.items():
        variable = ENV_PREFIX + name.upper()
        raw = source.get(variable)
        if raw is None:
            continue
        try:
            parsed[name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: cannot parse as %s", variable, raw, getattr(parse, "__name__", "value"))
    return parsed


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = Settings.field_names()
    usable = {key: value for key, value in overrides.items() if key in known and value is not None}
    if not usable:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, sorted(usable))
    return replace(settings, **usable)


def redact_secret(value: str) -> str:
    """Mask ``value`` for logs, keeping two characters at each end of long secrets."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    hidden = len(secret) - 4
    return secret[:2] + "*" * hidden + secret[-2:]
