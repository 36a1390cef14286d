"""
Test-runner side of the logstock protocol.

Provides:
- capture_headers() / fetch_headers(): request headers driving the middleware
- parse_query_response(): decode a query-mode response body
- LogstockClient: wraps an httpx client (FastAPI's TestClient included)
- assert_log_matches(): raise LogMismatchError with a unified diff

Typical test::

    client = LogstockClient(TestClient(app))
    client.post("/orders", json={"sku": "A1"})
    client.assert_matches("orders/create.log")

The first run records ``orders/create.log``; later runs compare against it.
"""

import base64
import binascii
import json
import re
from typing import Any, Iterable, Optional

import httpx

from logstock.capture.controller import QueryResult
from logstock.capture.middleware import (
    ENABLE_HEADER,
    FETCH_HEADER,
    FILTERS_HEADER,
    RESULT_HEADER,
    REWRITE_HEADER,
)

_BLOCK_RE = {
    "expected": re.compile(r'<p id="expected">([A-Za-z0-9+/=]*)</p>'),
    "actual": re.compile(r'<p id="actual">([A-Za-z0-9+/=]*)</p>'),
}


class LogMismatchError(AssertionError):
    """Raised when captured logs don't match the stored fixture."""

    def __init__(self, message: str, diff: str, fixture_name: str):
        self.diff = diff
        self.fixture_name = fixture_name
        super().__init__(message)


def _directive_headers(
    rewrite: Optional[bool], filters: Optional[Iterable[dict[str, Any]]]
) -> dict[str, str]:
    headers = {}
    if rewrite is not None:
        headers[REWRITE_HEADER] = "1" if rewrite else "0"
    if filters:
        headers[FILTERS_HEADER] = json.dumps(list(filters))
    return headers


def capture_headers() -> dict[str, str]:
    """
    Headers that arm capture for one request.

    Rewrite and filter directives only take effect on the fetch request, see
    fetch_headers().
    """
    return {ENABLE_HEADER: "true"}


def fetch_headers(
    fixture_name: str,
    *,
    rewrite: Optional[bool] = None,
    filters: Optional[Iterable[dict[str, Any]]] = None,
) -> dict[str, str]:
    """Headers that ask for the comparison against ``fixture_name``."""
    encoded = base64.b64encode(fixture_name.encode("utf-8")).decode("ascii")
    return {FETCH_HEADER: encoded, **_directive_headers(rewrite, filters)}


def parse_query_response(body: str, fixture_name: str = "", recorded: bool = False) -> QueryResult:
    """
    Decode the expected/actual blocks of a query-mode response.

    Raises:
        ValueError: If the body is not a query-mode response.
    """
    decoded = {}
    for name, pattern in _BLOCK_RE.items():
        match = pattern.search(body)
        if match is None:
            raise ValueError(f"Response has no '{name}' block")
        try:
            decoded[name] = base64.b64decode(match.group(1), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"Cannot decode '{name}' block: {e}") from e
    return QueryResult(
        fixture_name=fixture_name,
        expected=decoded["expected"],
        actual=decoded["actual"],
        recorded=recorded,
    )


def assert_log_matches(result: QueryResult) -> None:
    """
    Assert that captured logs match the fixture.

    Raises:
        LogMismatchError: With a unified diff when they differ.
    """
    if result.matches:
        return
    diff = result.diff()
    raise LogMismatchError(
        f"Captured logs don't match fixture: {result.fixture_name}\n\n"
        f"Diff:\n{diff}\n\n"
        f"To update the fixture, fetch it again with rewrite=True",
        diff=diff,
        fixture_name=result.fixture_name,
    )


class LogstockClient:
    """httpx client wrapper that arms capture on every request it sends."""

    def __init__(self, client: httpx.Client, fetch_url: str = "/") -> None:
        self.client = client
        self.fetch_url = fetch_url

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(capture_headers())
        return self.client.request(method, url, headers=headers, **kwargs)

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("DELETE", url, **kwargs)

    def fetch(
        self,
        fixture_name: str,
        *,
        rewrite: Optional[bool] = None,
        filters: Optional[Iterable[dict[str, Any]]] = None,
    ) -> QueryResult:
        """Drain captured logs and compare them against ``fixture_name``."""
        response = self.client.get(
            self.fetch_url,
            headers=fetch_headers(fixture_name, rewrite=rewrite, filters=filters),
        )
        response.raise_for_status()
        return parse_query_response(
            response.text,
            fixture_name=fixture_name,
            recorded=response.headers.get(RESULT_HEADER) == "recorded",
        )

    def assert_matches(
        self,
        fixture_name: str,
        *,
        rewrite: Optional[bool] = None,
        filters: Optional[Iterable[dict[str, Any]]] = None,
    ) -> QueryResult:
        result = self.fetch(fixture_name, rewrite=rewrite, filters=filters)
        assert_log_matches(result)
        return result
