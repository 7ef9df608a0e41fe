# =============================================================================
# Logging Setup
# =============================================================================
# Configures the root logger once at startup:
#   - Rotating file handler in the XDG state directory (10 MB x 5)
#   - Console handler on stderr: WARNING and above, or everything with --debug
#
# Library modules never configure logging themselves; they only do
# `logger = logging.getLogger(__name__)`.
# =============================================================================

import logging
import logging.handlers
from pathlib import Path

from ctrl_mail.config import Config

# Maximum log file size before rotation (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Rotated files to keep
BACKUP_COUNT = 5

# Third-party loggers that are too chatty at DEBUG
_NOISY_LOGGERS = ("aiosqlite", "aiosmtplib", "asyncio", "keyring")


def setup_logging(debug: bool = False, log_file: Path | None = None) -> None:
    """
    Configure logging for the application.

    Args:
        debug: Log everything at DEBUG, including to the console.
        log_file: Override the log file location (default: XDG state dir).
    """
    log_file = log_file or Config.log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(fmt="%(levelname)s - %(message)s"))
    root_logger.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging started (level={logging.getLevelName(log_level)}, file={log_file})"
    )
