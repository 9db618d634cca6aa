"""
Logging setup for the groundwork command.

Log records go to stderr so that stdout carries only plans, state listings
and output values.
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

CONSOLE_FORMAT = '%(levelname)s: %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s'

# Third-party loggers that are only useful at their own WARNING level
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")


def setup_logging(log_level: str = "INFO", log_file: bool = False) -> logging.Logger:
    """
    Configure the root logger once per invocation.

    Args:
        log_level: Console level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Also write a DEBUG-level log with thread names, one file per run

    Returns:
        The root logger
    """
    console_level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_file else console_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    if log_file:
        path = get_log_dir() / f"groundwork_{datetime.now():%Y%m%d_%H%M%S}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)
        root.debug(f"Writing debug log to {path}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_log_dir() -> Path:
    """$XDG_CACHE_HOME/groundwork/logs, or %LOCALAPPDATA%\\groundwork\\logs on Windows."""
    if os.name == 'nt':
        base = os.environ.get('LOCALAPPDATA', os.path.expanduser('~'))
    else:
        base = os.environ.get('XDG_CACHE_HOME', os.path.expanduser('~/.cache'))
    return Path(base) / 'groundwork' / 'logs'
