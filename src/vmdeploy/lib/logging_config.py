"""Logging configuration for vmdeploy.

All modules obtain loggers through :func:`get_logger`; the CLI calls
:func:`setup_logging` once per invocation to install the console handler.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("paramiko", "paramiko.transport", "urllib3", "requests")

_HANDLER_NAME = "vmdeploy-console"


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the vmdeploy console log handler.

    Args:
        verbose: Emit DEBUG records, including remote commands
        quiet: Only emit WARNING and above (takes precedence over verbose)
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    root = logging.getLogger("vmdeploy")
    root.setLevel(level)

    handler = next((h for h in root.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)
    handler.setLevel(level)

    third_party_level = logging.DEBUG if verbose and not quiet else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for a vmdeploy module.

    Args:
        name: Usually ``__name__`` of the calling module

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
