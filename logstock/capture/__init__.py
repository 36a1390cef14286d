"""Request-scoped log capture and fixture comparison.

Usage::

    from logstock.capture import CaptureController, LogstockHandler, LogstockMiddleware

    controller = CaptureController(settings)
    logging.getLogger().addHandler(LogstockHandler())
    app.add_middleware(LogstockMiddleware, controller=controller)

Arm capture per request with the header::

    Logstock: true

and fetch the comparison for a fixture with::

    Logstock-Get-Content: <base64 fixture name>
"""

from .controller import (
    CaptureController,
    CaptureSession,
    CaptureState,
    ControlDirectives,
    QueryResult,
    current_session,
    encode_query_response,
)
from .filters import (
    CallableFilter,
    DropLinesFilter,
    FilterPipeline,
    LogFilter,
    NormalizeFilter,
    RegexFilter,
    ReplaceFilter,
    build_filters,
    parse_filter_specs,
)
from .fixtures import Comparison, FixtureComparator, Recorded, validate_fixture_name
from .handler import LogstockHandler
from .manifest import ManifestStore, SegmentSummary
from .middleware import LogstockMiddleware, parse_directives
from .segment import SegmentWriter, new_tag

__all__ = [
    "CallableFilter",
    "CaptureController",
    "CaptureSession",
    "CaptureState",
    "Comparison",
    "ControlDirectives",
    "DropLinesFilter",
    "FilterPipeline",
    "FixtureComparator",
    "LogFilter",
    "LogstockHandler",
    "LogstockMiddleware",
    "ManifestStore",
    "NormalizeFilter",
    "QueryResult",
    "Recorded",
    "RegexFilter",
    "ReplaceFilter",
    "SegmentSummary",
    "SegmentWriter",
    "build_filters",
    "current_session",
    "encode_query_response",
    "new_tag",
    "parse_directives",
    "parse_filter_specs",
    "validate_fixture_name",
]
