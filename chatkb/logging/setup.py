from __future__ import annotations

import logging
from pathlib import Path

DEFAULT_LOG_NAME = "chatkb"
DEFAULT_LOG_FILENAME = "chatkb.log"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# Third-party loggers that report every HTTP request or telemetry event at INFO.
NOISY_LOGGERS = ("chromadb", "httpx", "httpcore", "openai")


def configure_logging(
    *,
    app_name: str = DEFAULT_LOG_NAME,
    log_dir: Path | None = None,
    console_level: int | str = logging.INFO,
) -> logging.Logger:
    """
    Attach a DEBUG file handler and a console handler to the application logger.

    Calling it again keeps the existing handlers and only moves the console
    level, so the CLI can apply ``CHATKB_LOG_LEVEL`` after an earlier import
    already configured logging.
    """
    logger = logging.getLogger(app_name)
    if logger.handlers:
        for handler in logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(console_level)
        return logger

    if log_dir is None:
        log_dir = Path(__file__).resolve().parent.parent.parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_dir / DEFAULT_LOG_FILENAME, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


__all__ = ["configure_logging"]
