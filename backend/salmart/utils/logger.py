"""
Logging utilities.

WHAT: Root logger setup for the chat server and client
WHY: Delivery failures, rejected bargain steps and dropped subscribers must land in one place
HOW: stdlib logging; console plus size-rotated file, chatty libraries held at WARNING
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..core.config import settings

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def _quiet_third_party():
    for name in settings.LOG_QUIET_LOGGERS.split(","):
        if name.strip():
            logging.getLogger(name.strip()).setLevel(logging.WARNING)


def setup_logging(force: bool = False):
    """
    Configure application logging.

    Called once from the app lifespan. Repeat calls are ignored unless
    `force` is set, so reloads and test clients do not stack handlers.

    Args:
        force: Rebuild handlers even if logging was already configured
    """
    global _configured
    if _configured and not force:
        return

    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    _quiet_third_party()
    _configured = True

    root_logger.info(
        f"Logging initialized (level={settings.LOG_LEVEL}, file={log_file}, "
        f"rotate={settings.LOG_MAX_BYTES}x{settings.LOG_BACKUP_COUNT})"
    )


def get_logger(name: str) -> logging.Logger:
    """Module logger (pass __name__)."""
    return logging.getLogger(name)
