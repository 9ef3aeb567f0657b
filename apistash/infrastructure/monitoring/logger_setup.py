"""Centralized logging configuration for the apistash application.

Logs go to stderr (and optionally a file) so that response bodies printed
on stdout stay pipeable. The HTTP client libraries log every request at
INFO; they are held at WARNING unless apistash itself runs at DEBUG.
"""

import logging
import sys
from typing import Iterable, Optional

DEFAULT_LOG_LEVEL = logging.WARNING
DEFAULT_LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(message)s'
DEFAULT_LOG_FILE = None  # Or e.g., Path.home() / ".apistash" / "apistash.log"

# Third-party loggers that are chatty on every outbound call
NOISY_LIBRARY_LOGGERS = ("httpx", "httpcore", "redis", "aiofiles")


def resolve_level(level_name: Optional[str], default: int = DEFAULT_LOG_LEVEL) -> int:
    """Maps a level name such as 'debug' to its logging constant."""
    if not level_name:
        return default
    level = logging.getLevelName(str(level_name).upper())
    return level if isinstance(level, int) else default


def quiet_library_loggers(log_level: int, names: Iterable[str] = NOISY_LIBRARY_LOGGERS) -> None:
    """Raises library loggers to WARNING unless ``log_level`` is DEBUG or lower."""
    library_level = log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    for name in names:
        logging.getLogger(name).setLevel(library_level)


def setup_logging(
    log_level: int = DEFAULT_LOG_LEVEL,
    log_format: Optional[str] = None,
    log_file: Optional[str] = DEFAULT_LOG_FILE,
    quiet_libraries: bool = True,
) -> None:
    """Configures the root logger for the application.

    Args:
        log_level: The minimum logging level (e.g., logging.DEBUG, logging.INFO).
        log_format: The format string for log messages (DEFAULT_LOG_FORMAT if None).
        log_file: Optional path to a file for logging output.
        quiet_libraries: Hold HTTP and storage client loggers at WARNING.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers attached to the root logger
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format or DEFAULT_LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to set up file logging to {log_file}: {e}", exc_info=True)

    if quiet_libraries:
        quiet_library_loggers(log_level)

    logging.debug(f"Logging configured. Level={logging.getLevelName(log_level)}")
