"""Centralized logging configuration for the ``nexus_pay`` package.

Two public helpers:

- ``configure_logging(...)``: attach a single ``StreamHandler`` to the package
  root logger (``"nexus_pay"``). Intended for applications and scripts, called
  once at process startup.
- ``get_logger(name)``: acquire a logger by name, ensuring the package root
  logger has at least a ``NullHandler`` so library use stays silent.

Library modules never attach their own handlers.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "nexus_pay"
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if level is None:
        env_val = os.getenv("NEXUS_PAY_LOG_LEVEL")
        if env_val:
            level = env_val
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        if level.isdigit():
            return int(level)
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Configure the package root logger exactly once.

    Args:
        level: Logging level as ``int`` or level name. If ``None``, uses
            ``NEXUS_PAY_LOG_LEVEL`` when set, otherwise ``logging.INFO``.
        fmt: Optional format string for the handler.
        stream: Output stream for the handler. Defaults to stderr.
    """
    global _CONFIGURED

    root = logging.getLogger(_PKG_LOGGER_NAME)
    root.setLevel(_parse_level(level))
    if _CONFIGURED:
        return

    for handler in list(root.handlers):
        if isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        logging.Formatter(fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root.addHandler(handler)
    root.propagate = False
    _CONFIGURED = True


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the package namespace.

    Attaches a ``NullHandler`` to the package root logger when nothing has
    been configured yet.
    """
    root = logging.getLogger(_PKG_LOGGER_NAME)
    if not root.handlers:
        root.addHandler(logging.NullHandler())
    if not name or name == _PKG_LOGGER_NAME:
        return root
    if not name.startswith(_PKG_LOGGER_NAME + "."):
        name = f"{_PKG_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
