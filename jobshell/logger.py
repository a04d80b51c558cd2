import logging
import sys

from jobshell.config import LOG_LEVEL, SHELL_NAME


class ShellFormatter(logging.Formatter):
    """Prefix diagnostics with the shell name, like the user-facing errors."""

    def format(self, record):
        message = super().format(record)
        return f"{SHELL_NAME}: [{record.levelname.lower()}] {message}"


def setup_logging(level=None):
    """Configure the package logger once, on stderr."""
    logger = logging.getLogger(SHELL_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ShellFormatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level or LOG_LEVEL)
    return logger


def get_logger(name):
    """Child logger for one module, e.g. get_logger(__name__)."""
    return logging.getLogger(SHELL_NAME).getChild(name.rsplit(".", 1)[-1])
