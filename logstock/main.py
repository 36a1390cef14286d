"""
Wiring logstock into a FastAPI application.

Usage:
    from fastapi import FastAPI
    from logstock.main import install_logstock

    app = FastAPI()

    # Only in test environments
    if os.environ.get("LOGSTOCK_ENABLED", "").lower() in ("1", "true", "yes"):
        install_logstock(app)
"""

import logging
from typing import Optional

from fastapi import FastAPI

from logstock.capture import CaptureController, LogstockHandler, LogstockMiddleware
from logstock.settings import LogstockSettings, get_settings

logger = logging.getLogger(__name__)


def install_logstock(
    app: FastAPI,
    settings: Optional[LogstockSettings] = None,
    *,
    logger_name: Optional[str] = None,
    level: Optional[int] = None,
) -> CaptureController:
    """
    Attach the capture handler and middleware to ``app``.

    Args:
        app: Application under test.
        settings: Optional LogstockSettings. If not provided, uses get_settings().
        logger_name: Logger to capture from. Defaults to the root logger.
        level: Level to set on that logger. The handler only sees records the
            logger lets through, and the root logger defaults to WARNING, so
            pass e.g. logging.INFO when the app does not configure logging.

    Returns:
        The CaptureController, also stored as ``app.state.logstock``.

    Raises:
        ConfigurationError: If the data or fixture directory is unusable.
    """
    if settings is None:
        settings = get_settings()

    controller = CaptureController(settings)
    handler = LogstockHandler(enable_debug_logs=settings.enable_debug_logs)
    target = logging.getLogger(logger_name)
    if level is not None:
        target.setLevel(level)
    target.addHandler(handler)
    controller.handler = handler

    app.add_middleware(LogstockMiddleware, controller=controller)
    app.state.logstock = controller

    logger.info(
        "Logstock capture enabled: data=%s fixtures=%s history=%d",
        settings.data_path,
        settings.fixture_path,
        settings.history_size,
    )
    return controller


def uninstall_logstock(controller: CaptureController, logger_name: Optional[str] = None) -> None:
    """Detach the handler added by install_logstock()."""
    handler = getattr(controller, "handler", None)
    if handler is not None:
        logging.getLogger(logger_name).removeHandler(handler)
        controller.handler = None
