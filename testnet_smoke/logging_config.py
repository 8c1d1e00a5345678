from __future__ import annotations

import logging
import os
import sys

_DEFAULT_LOG_LEVEL = "INFO"
_LEVEL_ENV = "TESTNET_SMOKE_LOG_LEVEL"
_RESET = "\x1b[0m"
_DIM = "\x1b[2m"
_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}

# Container output is relayed through this logger at DEBUG, one record per line.
SERVICE_OUTPUT_LOGGER = "testnet_smoke.service_output"


class _SmokeFormatter(logging.Formatter):
    """Colours level names; relayed container lines are dimmed and tagged with their service."""

    def __init__(self, *, use_color: bool) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if record.name == SERVICE_OUTPUT_LOGGER:
            service = getattr(record, "service", "?")
            line = f"{service:>10} | {record.getMessage()}"
            return f"{_DIM}{line}{_RESET}" if self._use_color else line

        original = record.levelname
        if self._use_color:
            color = _LEVEL_COLORS.get(original, "")
            record.levelname = f"{color}{original}{_RESET}" if color else original
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _should_use_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return sys.stderr.isatty()


def level_for_verbosity(verbose: int) -> str | None:
    """Map repeated `-v` flags to a level; None defers to the environment."""
    if verbose >= 1:
        return "DEBUG"
    return None


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    candidate = (level or os.getenv(_LEVEL_ENV, _DEFAULT_LOG_LEVEL)).upper()
    resolved = logging.getLevelName(candidate)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def configure_logging(*, level: str | int | None = None, force: bool = False) -> None:
    root = logging.getLogger()
    resolved_level = _resolve_level(level)
    root.setLevel(resolved_level)

    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved_level)
        return

    # stdout is reserved for command results (PASSED!, rendered blocks)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.setFormatter(_SmokeFormatter(use_color=_should_use_color()))
    root.handlers.clear()
    root.addHandler(handler)
