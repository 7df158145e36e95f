"""Tagged logging helper shared by every stylescope module.

Library code only ever logs through :func:`log_event`; nothing is printed
unless the host application (or the CLI) calls :func:`configure_logging`.
"""

from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger("stylescope")
_logger.addHandler(logging.NullHandler())


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "Engine")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    level_val = getattr(logging, level.upper(), logging.INFO)
    if not _logger.isEnabledFor(level_val):
        return
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(level_val, message, tag=tag)


def configure_logging(level: str = "INFO") -> None:
    """Attach a console handler with the tagged format (idempotent)."""
    if not any(getattr(h, "_stylescope", False) for h in _logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(levelname)s][%(tag)s] %(message)s"))
        handler._stylescope = True
        _logger.addHandler(handler)
    set_log_level(level)


def set_log_level(level: str) -> None:
    """Set the package log level (DEBUG/INFO/WARNING/ERROR)."""
    level_name = (level or "INFO").upper()
    _logger.setLevel(getattr(logging, level_name, logging.INFO))

