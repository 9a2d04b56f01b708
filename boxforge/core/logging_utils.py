from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# sing-box level names as used in settings
LEVEL_NAMES: dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}


def level_from_name(name: str) -> int:
    """Logging level for a settings level name, INFO when unknown."""
    return LEVEL_NAMES.get(str(name).lower(), logging.INFO)


def setup_logging(log_file: Path, level: int = logging.INFO) -> None:
    """
    Basic logging setup for the application.

    All loggers will write to the specified file and to stdout.

    This function works even if basicConfig was already called earlier.
    It will add handlers to the root logger without replacing existing ones.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    log_file_resolved = str(log_file.resolve())
    has_file_handler = any(
        isinstance(h, logging.FileHandler)
        and str(Path(h.baseFilename).resolve()) == log_file_resolved
        for h in root_logger.handlers
    )
    has_console_handler = any(
        isinstance(h, logging.StreamHandler)
        and not isinstance(h, logging.FileHandler)
        and getattr(h, "stream", None) is sys.stdout
        for h in root_logger.handlers
    )

    if not has_file_handler:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)
    if not has_console_handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

    for logger_name in logging.Logger.manager.loggerDict:
        if not logger_name.startswith("boxforge"):
            continue
        logger_obj = logging.getLogger(logger_name)
        logger_obj.propagate = True
        if logger_obj.level == logging.NOTSET or logger_obj.level > level:
            logger_obj.setLevel(logging.NOTSET)
