"""
Logging configuration for lyricslides.

This module sets up the logging system with multiple outputs:
    - Console: Real-time messages with tqdm-compatible formatting
    - log_full.log: Complete log of all events (DEBUG and above)
    - log_errors.log: Only ERROR and CRITICAL level messages
    - generation_failures.log: Songs whose background image could not be generated

File outputs are only created when a log directory is given; otherwise
everything goes to the console.

Usage:
    from lyricslides.core.logger import setup_logging, get_logger

    setup_logging(Path("~/.lyricslides/logs").expanduser())  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Dispatching to openai")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


LOG_FULL_FILENAME = "log_full"
LOG_ERRORS_FILENAME = "log_errors"
GENERATION_FAILURES_FILENAME = "generation_failures"

# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Formatter that colors the level name on console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        colored_levelname = f"{color}{record.levelname}{Colors.RESET}"
        return f"{colored_levelname}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to console without breaking progress bars.

    Uses tqdm.write(), which prints above any active bar instead of
    tearing through it.
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class GenerationFailureHandler(logging.Handler):
    """
    Handler that captures failed generations for the failures report file.

    Listens for log records carrying the 'generation_failed_*' extra fields
    (see log_generation_failure) and writes them in a human-readable format:

        Amazing Grace - Traditional [openai/dall-e-3]
        rate_limited: Rate limited by openai (HTTP 429)

    Records without those fields are ignored.

    Attributes:
        report_path: Path to the generation_failures.log file.
        report_file: Open file handle, set by open().
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """Open the report file for writing (overwrites existing content)."""
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, "generation_failed_title"):
            return

        if self.report_file is None:
            return

        try:
            title = getattr(record, "generation_failed_title", None) or "(untitled)"
            artist = getattr(record, "generation_failed_artist", None)
            provider = getattr(record, "generation_failed_provider", "")
            model = getattr(record, "generation_failed_model", "")
            kind = getattr(record, "generation_failed_kind", "")
            error = getattr(record, "generation_failed_error", "")

            heading = f"{title} - {artist}" if artist else title
            self.report_file.write(f"{heading} [{provider}/{model}]\n")
            self.report_file.write(f"{kind}: {error}\n\n")
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """Close the report file handle. Safe to call multiple times."""
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """Filter that only allows ERROR and CRITICAL level records."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(log_dir: Path | None = None, level: str = "INFO") -> None:
    """
    Configure the logging system for the application.

    Call ONCE at application startup, after the configuration is loaded.

    Args:
        log_dir: Directory where log files will be created. None disables
                 file output.
        level: Console log level name.

    Behavior:
        1. Configure root logger level to DEBUG
        2. Console handler (TqdmLoggingHandler) at the requested level
        3. If log_dir is given, create it and add:
           - log_full_{timestamp}.log (DEBUG)
           - log_errors_{timestamp}.log (ERROR+ via ErrorOnlyFilter)
           - generation_failures_{timestamp}.log (GenerationFailureHandler)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    file_formatter = logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT)

    full_handler = logging.FileHandler(log_dir / f"{LOG_FULL_FILENAME}_{timestamp}.log", mode="w", encoding="utf-8")
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(file_formatter)
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(log_dir / f"{LOG_ERRORS_FILENAME}_{timestamp}.log", mode="w", encoding="utf-8")
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(file_formatter)
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    failures_handler = GenerationFailureHandler(log_dir / f"{GENERATION_FAILURES_FILENAME}_{timestamp}.log")
    failures_handler.open()
    root_logger.addHandler(failures_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.

    Note:
        Loggers obtained before setup_logging() is called have no handlers
        of their own and follow whatever the root logger does.
    """
    return logging.getLogger(name)


def log_generation_failure(
    logger: logging.Logger,
    song_title: str | None,
    artist: str | None,
    provider: str,
    model: str,
    error_kind: str,
    error_message: str
) -> None:
    """
    Log a generation that ended in failure.

    Logs an ERROR message and attaches the extra fields that
    GenerationFailureHandler writes to generation_failures.log.

    Example:
        log_generation_failure(
            logger,
            song_title="Amazing Grace",
            artist="Traditional",
            provider="openai",
            model="dall-e-3",
            error_kind="auth_error",
            error_message="openai rejected the API key (HTTP 401)"
        )
    """
    label = song_title or "(untitled)"
    logger.error(
        f"Generation failed: {label} [{provider}] - {error_message}",
        extra={
            "generation_failed_title": song_title,
            "generation_failed_artist": artist,
            "generation_failed_provider": provider,
            "generation_failed_model": model,
            "generation_failed_kind": error_kind,
            "generation_failed_error": error_message,
        }
    )


def shutdown_logging() -> None:
    """
    Flush, close and detach every root handler.

    Typically called in a finally block at application exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except OSError:
            pass
        root_logger.removeHandler(handler)
