from __future__ import annotations

import logging

from gympass.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; later calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
        # SQL echo stays off unless explicitly requested.
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        _configured = True
    root.setLevel(resolved)
