"""Logging setup for hosts embedding ToolRelay.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed by the host through :func:`setup_logging` or, when a
:class:`~toolrelay.services.settings.Settings` object is at hand,
:func:`configure_from_settings`.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from ..services.settings import redact_secret

if TYPE_CHECKING:
    from ..services.settings import Settings

__all__ = ["SecretRedactionFilter", "configure_from_settings", "get_log_path", "setup_logging"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "toolrelay.log"
LOG_DIR_ENV = "TOOLRELAY_LOG_DIR"

_DEFAULT_LOG_DIR = Path.home() / ".toolrelay" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_state: dict[str, Path | None] = {"log_path": None}


class SecretRedactionFilter(logging.Filter):
    """Masks known secrets (API keys) in formatted log messages."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets = tuple(secret for secret in secrets if secret and len(secret) > 4)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self._secrets:
            if secret in masked:
                masked = masked.replace(secret, redact_secret(secret))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    secrets: Iterable[str] = (),
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally a console handler) on the root logger.

    Repeated calls are no-ops returning the active log path unless ``force``
    is set. ``TOOLRELAY_LOG_DIR`` overrides the default directory when
    ``log_dir`` is not given.
    """

    current = _state["log_path"]
    if current is not None and not force:
        return current

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    redaction = SecretRedactionFilter(secrets)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redaction)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Third-party clients log every request at INFO.
    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _state["log_path"] = log_path
    return log_path


def configure_from_settings(settings: "Settings", **kwargs: object) -> Path:
    """Configure logging from ``settings``: DEBUG when ``debug_logging`` is set, API key masked."""

    level = logging.DEBUG if settings.debug_logging else logging.INFO
    secrets = [settings.api_key] if settings.api_key else []
    return setup_logging(level, secrets=secrets, **kwargs)  # type: ignore[arg-type]


def get_log_path() -> Path | None:
    """Return the active log file, if logging has been configured."""

    return _state["log_path"]
