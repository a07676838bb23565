"""
Unit Tests - Logging Configuration
"""
import logging

import pytest

from catalog.config import get_settings
from catalog.config.logging import ROUTED_LOGGERS, _service_stamp, configure_logging


@pytest.fixture
def restore_logging():
    """Put the stdlib logger tree back the way the test runner left it"""
    names = ("", "sqlalchemy.engine") + ROUTED_LOGGERS
    saved = {}
    for name in names:
        logger = logging.getLogger(name)
        saved[name] = (list(logger.handlers), logger.level, logger.propagate)
    yield
    for name, (handlers, level, propagate) in saved.items():
        logger = logging.getLogger(name)
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate


class TestServiceStamp:
    """Tests for the per-line service fields"""

    def test_adds_service_env_and_component(self):
        """Test every event carries where it came from"""
        settings = get_settings()
        event = _service_stamp(settings, "seed")(None, "info", {"event": "Seeded"})

        assert event["service"] == settings.app_name
        assert event["env"] == settings.app_env
        assert event["component"] == "seed"

    def test_keeps_explicit_values(self):
        """Test a caller-supplied component is not overwritten"""
        event = _service_stamp(get_settings(), "api")(None, "info", {"component": "worker"})

        assert event["component"] == "worker"


class TestConfigureLogging:
    """Tests for stdlib routing"""

    def test_single_root_handler_and_routed_servers(self, restore_logging):
        """Test one stdout handler serves the root and the server loggers"""
        configure_logging("debug")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
        access = logging.getLogger("uvicorn.access")
        assert access.handlers == root.handlers
        assert access.propagate is False

    def test_sql_echo_follows_settings(self, monkeypatch, restore_logging):
        """Test statement logging is only enabled with DATABASE_ECHO"""
        monkeypatch.setattr(get_settings().database, "echo", True)
        configure_logging()
        assert logging.getLogger("sqlalchemy.engine").level == logging.INFO

        monkeypatch.setattr(get_settings().database, "echo", False)
        configure_logging()
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
