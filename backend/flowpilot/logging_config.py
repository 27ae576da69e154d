"""Process-wide logging setup."""

import logging

from flowpilot.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger. Repeated calls only change the level."""
    global _configured
    settings = get_settings()
    level_name = (level or settings.log_level).upper()

    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(level_name)

    # SQL echo goes through the sqlalchemy logger, keep it quiet unless asked
    if not settings.sql_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
