# tracker/logger.py
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List

FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
# Marks handlers installed here so Flask's and pytest's are left alone
HANDLER_TAG = "_mtg_sniper"

_configured = False


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


def _build_handlers(level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if _env_flag("LOG_TO_STDOUT"):
        handlers.append(logging.StreamHandler(sys.stdout))

    if _env_flag("LOG_TO_FILE"):
        log_file = os.getenv("LOG_FILE", "/data/mtg_sniper.log")
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    log_file,
                    maxBytes=int(os.getenv("LOG_MAX_BYTES", str(2 * 1024 * 1024))),
                    backupCount=int(os.getenv("LOG_BACKUPS", "3")),
                )
            )
        except OSError as e:
            logging.getLogger(__name__).warning("Failed to initialize file logging: %s", e)

    formatter = logging.Formatter(FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        setattr(handler, HANDLER_TAG, True)
    return handlers


def setup_logging():
    global _configured
    if _configured:
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, HANDLER_TAG, False) for h in root.handlers):
        for handler in _build_handlers(level):
            root.addHandler(handler)

    # urllib3 logs every eBay/Scryfall request at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))

    _configured = True


def get_logger(name: str | None = None) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
