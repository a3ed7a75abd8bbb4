"""
Logging setup shared by the ``relay`` and ``peer`` commands.

The CLI passes its ``--log-level`` string straight to :func:`configure_logging`.
Chatty library loggers (websocket frames, uvicorn access lines) only follow the
chosen level when it is DEBUG; otherwise they stay at WARNING or above.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

LIBRARY_LOGGERS = ("websockets", "uvicorn.access")


def parse_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Map a textual level (``"debug"``, ``"WARNING"``...) onto a logging constant."""

    if not value:
        return default
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else default


def quiet_library_loggers(level: int) -> None:
    library_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> bool:
    """
    Install a stdout handler on the root logger.

    Returns ``False`` when the root logger already had handlers, in which case
    only the library loggers are adjusted.
    """

    resolved = level if isinstance(level, int) else parse_level(level)
    quiet_library_loggers(resolved)
    if logging.getLogger().handlers:
        return False
    logging.basicConfig(level=resolved, format=format or DEFAULT_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])
    return True
