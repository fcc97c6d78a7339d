"""
Centralized logging configuration for blescope.

Every module logs through `logging.getLogger(__name__)`; this module
only wires handlers and formatting once, at process start.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Prefixes already used by log messages; no extra level emoji is added to these
_EMOJI_PREFIXES = ("⚠️", "❌", "💥", "📡", "🔍", "🔗", "🔌", "📥")


class EmojiFormatter(logging.Formatter):
    """Formatter that adds a level-based emoji prefix to warnings and errors."""

    LEVEL_EMOJIS = {
        logging.DEBUG: "",
        logging.INFO: "",
        logging.WARNING: "⚠️ ",
        logging.ERROR: "❌ ",
        logging.CRITICAL: "💥 ",
    }

    def format(self, record: logging.LogRecord) -> str:
        emoji = self.LEVEL_EMOJIS.get(record.levelno, "")
        if emoji and not record.getMessage().strip().startswith(_EMOJI_PREFIXES):
            record.msg = f"{emoji}{record.msg}"
        return super().format(record)


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure the root logger.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stderr (default: True)
        log_file: Optional file path for log output
        simple_format: Use simplified format without timestamps
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT

    # stdout is reserved for command output (scan tables, samples)
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(EmojiFormatter(fmt, datefmt=DATE_FORMAT))
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # bleak is chatty below WARNING
    logging.getLogger("bleak").setLevel(logging.DEBUG if verbose else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Connected to %s", address)
    """
    return logging.getLogger(name)
