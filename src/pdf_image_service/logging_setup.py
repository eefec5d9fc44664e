import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from .config import Settings

LOGGER_NAME = "pdf_image_service"
LOG_FILE_NAME = "service.log"
LOG_MAX_BYTES = 20 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def init_logger(settings: Settings) -> logging.Logger:
    """
    Idempotent logger init:
    - Always logs to stdout.
    - Writes to LOG_DIR/service.log only when settings.log_to_file is True,
      rotating by size.
    - Respects settings.log_level.
    """
    root = logging.getLogger()
    if getattr(root, "_pdf_image_service_inited", False):
        return logging.getLogger(LOGGER_NAME)

    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    text_fmt = "%(asctime)s %(levelname)s %(name)s - %(message)s"
    date_fmt = "%Y-%m-%dT%H:%M:%S%z"
    formatter = logging.Formatter(text_fmt, datefmt=date_fmt)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    root.addHandler(ch)

    if settings.log_to_file:
        os.makedirs(settings.log_dir, exist_ok=True)
        fh = RotatingFileHandler(
            os.path.join(settings.log_dir, LOG_FILE_NAME),
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)

    root._pdf_image_service_inited = True  # type: ignore[attr-defined]
    logger = logging.getLogger(LOGGER_NAME)
    logger.debug("Logger initialized")
    return logger
