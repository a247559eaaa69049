from __future__ import annotations

import logging
import sys

from mailcourier.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if not any(getattr(handler, "_mailcourier", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._mailcourier = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # arq logs every job start/finish at INFO; the worker logs its own outcome lines.
    logging.getLogger("arq").setLevel(max(root.level, logging.WARNING))
