"""
Unit tests for logstock/main.py
"""

import logging

import pytest
from fastapi import FastAPI

from logstock.capture import CaptureController, LogstockHandler
from logstock.main import install_logstock, uninstall_logstock
from logstock.settings import LogstockSettings


@pytest.mark.unit
class TestInstallLogstock:
    """Wiring the capture handler and middleware into an app."""

    def test_returns_controller_on_app_state(self, settings):
        app = FastAPI()

        controller = install_logstock(app, settings, logger_name="install.test")
        try:
            assert isinstance(controller, CaptureController)
            assert app.state.logstock is controller
        finally:
            uninstall_logstock(controller, logger_name="install.test")

    def test_handler_added_to_named_logger(self, settings):
        app = FastAPI()
        target = logging.getLogger("install.test")

        controller = install_logstock(app, settings, logger_name="install.test")
        try:
            assert isinstance(controller.handler, LogstockHandler)
            assert controller.handler in target.handlers
        finally:
            uninstall_logstock(controller, logger_name="install.test")

        assert controller.handler is None
        assert not any(isinstance(h, LogstockHandler) for h in target.handlers)

    def test_defaults_to_root_logger(self, settings):
        app = FastAPI()

        controller = install_logstock(app, settings)
        handler = controller.handler
        try:
            assert handler in logging.getLogger().handlers
        finally:
            uninstall_logstock(controller)

        assert handler not in logging.getLogger().handlers

    def test_middleware_registered(self, settings):
        app = FastAPI()

        controller = install_logstock(app, settings, logger_name="install.test")
        try:
            names = [m.cls.__name__ for m in app.user_middleware]
            assert "LogstockMiddleware" in names
        finally:
            uninstall_logstock(controller, logger_name="install.test")

    def test_debug_logs_setting_reaches_handler(self, data_dir, fixture_dir):
        settings = LogstockSettings(
            data_path=data_dir, fixture_path=fixture_dir, enable_debug_logs=True, _env_file=None
        )

        controller = install_logstock(FastAPI(), settings, logger_name="install.test")
        try:
            assert controller.handler.enable_debug_logs is True
        finally:
            uninstall_logstock(controller, logger_name="install.test")

    def test_uses_cached_settings_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOGSTOCK_DATA_PATH", str(tmp_path / "env-data"))
        monkeypatch.setenv("LOGSTOCK_FIXTURE_PATH", str(tmp_path / "env-fixtures"))

        controller = install_logstock(FastAPI(), logger_name="install.test")
        try:
            assert controller.settings.data_path == tmp_path / "env-data"
            assert (tmp_path / "env-data").is_dir()
        finally:
            uninstall_logstock(controller, logger_name="install.test")

    def test_uninstall_is_idempotent(self, settings):
        controller = install_logstock(FastAPI(), settings, logger_name="install.test")

        uninstall_logstock(controller, logger_name="install.test")
        uninstall_logstock(controller, logger_name="install.test")

        assert controller.handler is None


@pytest.mark.unit
class TestInstallLevel:
    """Optional level on the captured logger."""

    @pytest.fixture
    def quiet_logger(self):
        target = logging.getLogger("install.quiet")
        previous = target.level
        target.setLevel(logging.NOTSET)
        yield target
        target.setLevel(previous)

    def test_level_left_alone_by_default(self, settings, quiet_logger):
        controller = install_logstock(FastAPI(), settings, logger_name="install.quiet")
        try:
            assert quiet_logger.level == logging.NOTSET
        finally:
            uninstall_logstock(controller, logger_name="install.quiet")

    def test_level_lets_info_records_reach_the_capture(self, settings, quiet_logger):
        controller = install_logstock(
            FastAPI(), settings, logger_name="install.quiet", level=logging.INFO
        )
        try:
            with controller.capture():
                quiet_logger.info("order created")
                quiet_logger.debug("cache miss")
        finally:
            uninstall_logstock(controller, logger_name="install.quiet")

        assert quiet_logger.level == logging.INFO
        assert controller.comparator.get_actual_content() == "INFO [install.quiet] order created\n"
