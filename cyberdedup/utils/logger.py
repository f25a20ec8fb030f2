# -*- coding: utf-8 -*-
"""
Logging setup for the resolution pipeline.

Entry points (the pipeline script, the resolution processor CLI) call
setup_logging() once; every module then logs through
logging.getLogger(__name__) so run output and the optional log file share
one format.

Examples:
    from cyberdedup.utils.logger import setup_logging
    setup_logging(log_file="logs/resolve.log")

    import logging
    logger = logging.getLogger(__name__)
    logger.info("Resolving 42 articles")
"""
# Standard library
import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_logging_configured = False


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_string: str = LOG_FORMAT,
) -> None:
    """
    Configure root logging with a console handler and an optional file handler.

    Only the first call has an effect; later calls do not add handlers.

    Args:
        level: Logging level for both handlers
        log_file: Optional log file path (parent directories are created)
        format_string: Record format
    """
    global _logging_configured

    if _logging_configured:
        return

    formatter = logging.Formatter(format_string)
    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Line-buffered so long runs stream progress
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(line_buffering=True)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """Return the module logger (same as logging.getLogger(name))."""
    return logging.getLogger(name)


def log_banner(logger: logging.Logger, title: str, width: int = 70) -> None:
    """Log a stage banner: a rule, the title, a rule."""
    logger.info("=" * width)
    logger.info(title)
    logger.info("=" * width)
