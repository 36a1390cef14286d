"""FastAPI/Starlette middleware exposing the capture protocol over headers.

Request headers understood:

    Logstock: true                         arm capture for this request
    Logstock-Get-Content: <base64 name>    query mode: answer with the comparison
    Logstock-Rewrite: 1                    overwrite the fixture instead of comparing
    Logstock-Filters: <JSON filter specs>  extra filters for this request

Requests without any Logstock header pass straight through.

Usage::

    from logstock.capture import LogstockMiddleware

    app.add_middleware(LogstockMiddleware, controller=controller)
"""

import base64
import binascii
import logging
from typing import Mapping

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import HTMLResponse, PlainTextResponse
from starlette.responses import Response as StarletteResponse
from starlette.types import ASGIApp

from logstock.exceptions import (
    InvalidDirectiveError,
    InvalidFilterSpecError,
    InvalidFixtureNameError,
)

from .controller import CaptureController, ControlDirectives, encode_query_response
from .filters import parse_filter_specs
from .fixtures import validate_fixture_name

logger = logging.getLogger(__name__)

ENABLE_HEADER = "logstock"
FETCH_HEADER = "logstock-get-content"
REWRITE_HEADER = "logstock-rewrite"
FILTERS_HEADER = "logstock-filters"

# Response header telling the test runner whether a comparison happened
RESULT_HEADER = "Logstock-Result"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_directives(headers: Mapping[str, str]) -> ControlDirectives:
    """
    Decode Logstock request headers into typed directives.

    Raises:
        InvalidDirectiveError: If a header value cannot be decoded.
    """
    directives = ControlDirectives(
        enable=headers.get(ENABLE_HEADER, "").strip().lower() in _TRUE_VALUES,
    )

    rewrite = headers.get(REWRITE_HEADER)
    if rewrite is not None:
        directives.rewrite = rewrite.strip().lower() in _TRUE_VALUES

    fetch = headers.get(FETCH_HEADER)
    if fetch is not None:
        try:
            name = base64.b64decode(fetch.strip(), validate=True).decode("utf-8")
            directives.fetch_content = validate_fixture_name(name)
        except (binascii.Error, UnicodeDecodeError) as e:
            raise InvalidDirectiveError(f"{FETCH_HEADER} is not base64-encoded UTF-8: {e}") from e
        except InvalidFixtureNameError as e:
            raise InvalidDirectiveError(str(e)) from e

    raw_filters = headers.get(FILTERS_HEADER)
    if raw_filters:
        try:
            directives.filters = parse_filter_specs(raw_filters)
        except InvalidFilterSpecError as e:
            raise InvalidDirectiveError(f"{FILTERS_HEADER}: {e}") from e

    return directives


def _has_directives(headers: Mapping[str, str]) -> bool:
    return any(
        name in headers for name in (ENABLE_HEADER, FETCH_HEADER, REWRITE_HEADER, FILTERS_HEADER)
    )


class LogstockMiddleware(BaseHTTPMiddleware):
    """Middleware that captures request logs and answers query-mode requests."""

    def __init__(self, app: ASGIApp, controller: CaptureController) -> None:
        super().__init__(app)
        self.controller = controller

    async def dispatch(self, request: Request, call_next) -> Response:
        if not _has_directives(request.headers):
            return await call_next(request)

        try:
            directives = parse_directives(request.headers)
        except InvalidDirectiveError as e:
            logger.warning("Rejected logstock directives: %s", e)
            return PlainTextResponse(str(e), status_code=400)

        session = self.controller.begin_request(directives)

        if directives.is_query:
            # Short-circuit: the application never sees this request
            result = self.controller.query(session)
            return HTMLResponse(
                encode_query_response(result),
                status_code=200,
                headers={RESULT_HEADER: "recorded" if result.recorded else "compared"},
            )

        try:
            response: Response = await call_next(request)

            # Drain the body so records logged while streaming land in this session
            response_body = b""
            async for chunk in response.body_iterator:
                response_body += chunk
            response = StarletteResponse(
                content=response_body,
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=response.media_type,
            )
        finally:
            tag = self.controller.end_request(session)

        if tag is not None:
            logger.debug("Captured %s %s -> segment %s", request.method, request.url.path, tag)
        return response
