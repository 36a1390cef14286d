"""logging.Handler feeding records into the active capture session."""

import logging

from .controller import current_session

# Records from these loggers are logstock's own activity
_OWN_LOGGER = "logstock"


class LogstockHandler(logging.Handler):
    """
    Buffers records emitted while the current request's session is armed.

    Attach it to the root logger (``install_logstock`` does this). Records
    outside an armed session are ignored. logstock's own records are skipped
    unless ``enable_debug_logs`` is set, so capture activity does not end up
    in the fixtures it is compared against.
    """

    def __init__(self, enable_debug_logs: bool = False, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.enable_debug_logs = enable_debug_logs

    def _is_own(self, name: str) -> bool:
        return name == _OWN_LOGGER or name.startswith(_OWN_LOGGER + ".")

    def emit(self, record: logging.LogRecord) -> None:
        session = current_session()
        if session is None or not session.armed:
            return
        if not self.enable_debug_logs and self._is_own(record.name):
            return
        try:
            session.buffer(record)
        except Exception:
            self.handleError(record)
