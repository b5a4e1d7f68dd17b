"""Shared utility functions."""

import logging
import re
import subprocess
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("awstools")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    """

    def __init__(self) -> None:
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(line.rstrip("\r"))

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(self._buf)
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%Y-%m-%d %H:%M:%S]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
        ("invoke", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def debug(msg: str) -> None:
    logger.debug(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit.

    Only the CLI layer calls this; library code raises instead.
    """
    logger.error(msg)
    sys.exit(1)


def sanitize_name(name: str) -> str:
    """Reduce a job or resource name to a safe filename component.

    :param name: Arbitrary name, possibly containing path separators
    :return: Basename with unsafe characters replaced by underscores
    :raises ValueError: If nothing usable is left
    """
    base = re.split(r"[\\/]", name.strip())[-1]
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", base).lstrip(".")
    if not safe:
        raise ValueError(f"Invalid job name: '{name}'")
    return safe


def run_cmd(*args) -> int:
    """Execute local command, streaming its output through the logger.

    :return: Process exit code
    """
    result = subprocess.run(args, capture_output=True, text=True)
    for line in (result.stdout or "").splitlines():
        if line.strip():
            logger.info(line)
    if result.returncode != 0 and result.stderr:
        for line in result.stderr.splitlines():
            if line.strip():
                logger.warning(line)
    return result.returncode
