"""Tests for vmdeploy logging configuration."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest

import vmdeploy
from vmdeploy.lib.logging_config import get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_logger() -> Generator[None, None, None]:
    """Remove handlers added to the vmdeploy logger by each test."""
    root = logging.getLogger("vmdeploy")
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_default_level_is_info(self) -> None:
        """Without flags the vmdeploy logger emits INFO."""
        setup_logging()
        assert logging.getLogger("vmdeploy").level == logging.INFO

    def test_verbose_enables_debug(self) -> None:
        """Verbose mode lowers the level to DEBUG, third-party loggers included."""
        setup_logging(verbose=True)
        assert logging.getLogger("vmdeploy").level == logging.DEBUG
        assert logging.getLogger("paramiko").level == logging.DEBUG

    def test_quiet_wins_over_verbose(self) -> None:
        """Quiet takes precedence when both flags are set."""
        setup_logging(verbose=True, quiet=True)
        assert logging.getLogger("vmdeploy").level == logging.WARNING
        assert logging.getLogger("paramiko").level == logging.WARNING

    def test_handler_installed_once(self) -> None:
        """Repeated setup reuses the console handler."""
        setup_logging()
        setup_logging(verbose=True)
        named = [
            h
            for h in logging.getLogger("vmdeploy").handlers
            if h.get_name() == "vmdeploy-console"
        ]
        assert len(named) == 1
        assert named[0].level == logging.DEBUG


def test_get_logger_is_namespaced() -> None:
    """Module loggers live under the vmdeploy hierarchy."""
    logger = get_logger("vmdeploy.deploy.converge")
    assert logger.name == "vmdeploy.deploy.converge"
    assert logger.parent is not None


def test_modules_log_through_get_logger() -> None:
    """Only the logging module touches ``logging.getLogger`` directly."""
    package_root = Path(vmdeploy.__file__).parent
    direct = [
        str(path.relative_to(package_root))
        for path in package_root.rglob("*.py")
        if path.name != "logging_config.py"
        and "logging.getLogger(" in path.read_text(encoding="utf-8")
    ]
    assert direct == []
