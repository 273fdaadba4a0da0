"""
Logging setup.

Applies the application-wide log format once at process start. Modules only
ever call ``logging.getLogger(__name__)``.
"""

import logging

from app.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger with the standard format."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # SQL echo goes through its own logger; keep it quiet unless debugging
    if not settings.sqlalchemy_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
