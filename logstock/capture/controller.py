"""Capture controller: the per-request lifecycle.

A CaptureSession is created at request begin from the request's control
directives and lives until request end:

    IDLE --enable--> ARMED --end_request--> DRAINING --> IDLE
    IDLE --fetch_content--> DRAINING --query--> IDLE

ARMED sessions buffer the log records emitted while the request runs (see
LogstockHandler); at request end the buffer becomes a new segment and a
manifest entry. A fetch_content directive puts the request in query mode:
the captured content is compared against a fixture and the request is
answered without running the application.
"""

import base64
import copy
import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Iterator, Optional

from logstock.exceptions import CaptureStateError
from logstock.settings import LogstockSettings, get_settings

from .filters import FilterPipeline, LogFilter, build_filters
from .fixtures import FixtureComparator, Recorded, unified_log_diff
from .manifest import ManifestStore
from .segment import SegmentWriter, new_tag

logger = logging.getLogger(__name__)

_current_session: ContextVar[Optional["CaptureSession"]] = ContextVar(
    "logstock_session", default=None
)


class CaptureState(str, Enum):
    """States of a capture session."""

    IDLE = "idle"
    ARMED = "armed"
    DRAINING = "draining"


_TRANSITIONS: dict[CaptureState, set[CaptureState]] = {
    CaptureState.IDLE: {CaptureState.ARMED, CaptureState.DRAINING},
    CaptureState.ARMED: {CaptureState.DRAINING},
    CaptureState.DRAINING: {CaptureState.IDLE},
}


@dataclass
class ControlDirectives:
    """
    Typed control directives for one request.

    Attributes:
        enable: Arm capture for this request
        fetch_content: Fixture name; switches the request to query mode
        rewrite: Overwrite the fixture instead of comparing. None keeps the
            configured default
        filters: Filters merged after the configured ones for this request
    """

    enable: bool = False
    fetch_content: Optional[str] = None
    rewrite: Optional[bool] = None
    filters: list[LogFilter] = field(default_factory=list)

    @property
    def is_query(self) -> bool:
        return self.fetch_content is not None


@dataclass
class CaptureSession:
    """Transient per-request capture state. Never persisted."""

    filters: FilterPipeline
    rewrite: bool = False
    fetch_content: Optional[str] = None
    state: CaptureState = CaptureState.IDLE
    tag: Optional[str] = None
    records: list[logging.LogRecord] = field(default_factory=list)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _token: Optional[Token] = field(default=None, init=False, repr=False)

    @property
    def armed(self) -> bool:
        return self.state is CaptureState.ARMED

    def transition(self, target: CaptureState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise CaptureStateError(
                f"Cannot move capture session from {self.state.value} to {target.value}"
            )
        self.state = target

    def arm(self, tag: str) -> None:
        self.transition(CaptureState.ARMED)
        self.tag = tag

    def buffer(self, record: logging.LogRecord) -> None:
        """Keep a snapshot of ``record`` if the session is armed."""
        if not self.armed:
            return
        snapshot = copy.copy(record)
        # Freeze the message now; args may be mutated after the call returns
        snapshot.msg = record.getMessage()
        snapshot.args = None
        with self._lock:
            self.records.append(snapshot)

    def drain_records(self) -> list[logging.LogRecord]:
        with self._lock:
            records, self.records = self.records, []
        return records


@dataclass(frozen=True)
class QueryResult:
    """Outcome of a query-mode request."""

    fixture_name: str
    expected: str
    actual: str
    recorded: bool = False

    @property
    def matches(self) -> bool:
        return self.recorded or self.expected == self.actual

    def diff(self) -> str:
        return unified_log_diff(self.expected, self.actual, self.fixture_name)


def encode_query_response(result: QueryResult) -> str:
    """Two independently base64-encoded blocks tagged expected and actual."""
    expected = base64.b64encode(result.expected.encode("utf-8")).decode("ascii")
    actual = base64.b64encode(result.actual.encode("utf-8")).decode("ascii")
    return f'<p id="expected">{expected}</p>\n<p id="actual">{actual}</p>'


def current_session() -> Optional[CaptureSession]:
    """The capture session bound to the running request, if any."""
    return _current_session.get()


class CaptureController:
    """Orchestrates capture sessions over a manifest store and fixture directory."""

    def __init__(
        self,
        settings: Optional[LogstockSettings] = None,
        store: Optional[ManifestStore] = None,
        writer: Optional[SegmentWriter] = None,
        comparator: Optional[FixtureComparator] = None,
        filters: Optional[FilterPipeline] = None,
    ) -> None:
        self.settings = settings or get_settings()
        # Misconfigured directories fail here, not on the first request
        self.settings.prepare_directories()

        self.store = store or ManifestStore(
            self.settings.data_path,
            file_mode=self.settings.file_mode,
            history_size=self.settings.history_size,
        )
        self.writer = writer or SegmentWriter(
            self.store,
            formatter=logging.Formatter(self.settings.line_format),
            file_mode=self.settings.file_mode,
        )
        self.comparator = comparator or FixtureComparator(
            self.store,
            self.settings.fixture_path,
            file_mode=self.settings.file_mode,
            dir_mode=self.settings.dir_mode,
        )
        if filters is None:
            filters = FilterPipeline(build_filters(self.settings.filters))
        self.filters = filters
        # Set by install_logstock()
        self.handler: Optional[logging.Handler] = None

    # -------------------------------------------------------------------------
    # Default filters (copied into every session)
    # -------------------------------------------------------------------------
    def add_filter(self, f) -> None:
        self.filters.add_filter(f)

    def set_filters(self, filters) -> None:
        self.filters.set_filters(filters)

    def clear_filters(self) -> None:
        self.filters.clear_filters()

    def get_filters(self) -> list[LogFilter]:
        return self.filters.get_filters()

    # -------------------------------------------------------------------------
    # Request lifecycle
    # -------------------------------------------------------------------------
    def begin_request(self, directives: ControlDirectives) -> CaptureSession:
        """
        Start a session for the current request and bind it to this context.

        Directive filters are merged after the default filters; they only
        apply to this session.
        """
        rewrite = self.settings.rewrite if directives.rewrite is None else directives.rewrite
        session = CaptureSession(
            filters=self.filters.merged(directives.filters),
            rewrite=rewrite,
            fetch_content=directives.fetch_content,
        )
        if not directives.is_query and directives.enable:
            session.arm(new_tag())
            logger.debug("Capture armed for segment %s", session.tag)
        session._token = _current_session.set(session)
        return session

    def query(self, session: CaptureSession) -> QueryResult:
        """Resolve a query-mode session against its fixture."""
        if session.fetch_content is None:
            raise CaptureStateError("Session was not started in query mode")
        session.transition(CaptureState.DRAINING)
        try:
            result = self.comparator.get_content(
                session.fetch_content,
                rewrite=session.rewrite,
                filters=session.filters,
            )
        finally:
            session.transition(CaptureState.IDLE)
            self._unbind(session)

        if isinstance(result, Recorded):
            return QueryResult(fixture_name=result.fixture_name, expected="", actual="", recorded=True)
        return QueryResult(
            fixture_name=result.fixture_name,
            expected=result.expected,
            actual=result.actual,
        )

    def end_request(self, session: CaptureSession) -> Optional[str]:
        """
        Flush an armed session into a new segment and manifest entry.

        Returns:
            The segment tag, or None when nothing was written.

        Raises:
            OSError: If the segment cannot be written. The session is still
                reset to IDLE.
        """
        try:
            if not session.armed:
                return None
            session.transition(CaptureState.DRAINING)
            records = session.drain_records()
            if not records:
                return None
            summary = self.writer.write(session.tag, records)
            self.store.append(session.tag, summary)
            logger.debug("Flushed %d record(s) to segment %s", summary.records, session.tag)
            return session.tag
        finally:
            session.state = CaptureState.IDLE
            self._unbind(session)

    @contextmanager
    def capture(self, directives: Optional[ControlDirectives] = None) -> Iterator[CaptureSession]:
        """Run a block as one capture session, for hosts without HTTP requests."""
        session = self.begin_request(directives or ControlDirectives(enable=True))
        try:
            yield session
        finally:
            self.end_request(session)

    def _unbind(self, session: CaptureSession) -> None:
        token, session._token = session._token, None
        if token is None:
            return
        try:
            _current_session.reset(token)
        except ValueError:
            # Created in another context; just clear ours
            _current_session.set(None)
