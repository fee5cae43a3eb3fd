"""Tagged logging helper shared by the chord detector modules.

Records go to the ``chordsense`` logger with a ``tag`` attribute naming the
subsystem (Chord, Spectrum, Config, Detector, Levels). The library only
installs a NullHandler; hosts either configure logging themselves or call
``enable_console_logging`` to get ``[LEVEL][Tag] message | key=value`` lines.
"""
from __future__ import annotations

import logging
from typing import Any

LOGGER_NAME = "chordsense"

_logger = logging.getLogger(LOGGER_NAME)
_logger.addHandler(logging.NullHandler())
_logger.setLevel(logging.INFO)

_console_handler: logging.Handler | None = None


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        kwargs.setdefault("extra", {})["tag"] = kwargs.pop("tag", "Chord")
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def _level_value(level: str | None) -> int:
    name = (level or "INFO").upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def _format_field(value: Any) -> str:
    # Diagnostics are mostly floats; keep lines short
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log ``message`` under ``tag``, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={_format_field(v)}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(_level_value(level), message, tag=tag)


def enable_console_logging(level: str | None = None) -> logging.Handler:
    """Attach a stderr handler with the tagged format (once) and return it."""
    global _console_handler
    if _console_handler is None:
        _console_handler = logging.StreamHandler()
        _console_handler.setFormatter(logging.Formatter("[%(levelname)s][%(tag)s] %(message)s"))
        _logger.addHandler(_console_handler)
    if level is not None:
        set_log_level(level)
    return _console_handler


def is_debug_enabled() -> bool:
    """True when DEBUG events would be emitted (lets hot paths skip formatting)."""
    return _logger.isEnabledFor(logging.DEBUG)


def set_log_level(level: str) -> None:
    """Set the chordsense log level (DEBUG/INFO/WARNING/ERROR)."""
    _logger.setLevel(_level_value(level))


def get_log_level() -> str:
    return logging.getLevelName(_logger.level)
