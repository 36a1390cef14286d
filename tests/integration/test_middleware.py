"""
Integration tests for the logstock middleware.

Drives a FastAPI app through TestClient the way a test suite would:
capture requests, then fetch the comparison against a fixture.
"""

import asyncio
import base64
import logging

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient

from logstock.main import install_logstock, uninstall_logstock
from logstock.testing import LogMismatchError, LogstockClient, fetch_headers

APP_LOGGER = "demo"

log = logging.getLogger(APP_LOGGER)


def create_app() -> FastAPI:
    app = FastAPI()

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int):
        log.info("Fetching order %d", order_id)
        if order_id == 404:
            log.warning("Order %d not found", order_id)
            raise HTTPException(status_code=404, detail="Order not found")
        return {"id": order_id}

    @app.post("/orders")
    def create_order(payload: dict):
        log.info("Creating order sku=%s", payload.get("sku"))
        return {"id": 1, "sku": payload.get("sku")}

    @app.get("/boom")
    async def boom():
        log.error("About to fail")
        raise RuntimeError("boom")

    @app.get("/stream")
    async def stream():
        async def chunks():
            for i in range(3):
                log.info("chunk %d", i)
                await asyncio.sleep(0)
                yield f"{i}\n"

        return StreamingResponse(chunks(), media_type="text/plain")

    return app


@pytest.fixture
def app_logger():
    previous = log.level
    log.setLevel(logging.DEBUG)
    yield log
    log.setLevel(previous)


@pytest.fixture
def app(settings, app_logger):
    app = create_app()
    controller = install_logstock(app, settings, logger_name=APP_LOGGER)
    yield app
    uninstall_logstock(controller, logger_name=APP_LOGGER)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def logstock(client):
    return LogstockClient(client, fetch_url="/health")


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


@pytest.mark.integration
class TestCaptureAndFetch:
    """End-to-end capture, record and compare."""

    def test_first_fetch_records_fixture(self, logstock, fixture_dir):
        response = logstock.get("/orders/7")
        assert response.json() == {"id": 7}

        result = logstock.fetch("orders/get.log")

        assert result.recorded
        assert (fixture_dir / "orders" / "get.log").read_text() == "INFO [demo] Fetching order 7\n"

    def test_second_run_compares(self, logstock):
        logstock.get("/orders/7")
        logstock.fetch("get.log")

        logstock.get("/orders/7")
        result = logstock.assert_matches("get.log")

        assert not result.recorded
        assert result.expected == result.actual == "INFO [demo] Fetching order 7\n"

    def test_mismatch_raises_with_diff(self, logstock, fixture_dir):
        (fixture_dir / "get.log").write_text("INFO [demo] Fetching order 8\n")
        logstock.get("/orders/7")

        with pytest.raises(LogMismatchError) as exc_info:
            logstock.assert_matches("get.log")

        assert "-INFO [demo] Fetching order 8" in exc_info.value.diff
        assert "+INFO [demo] Fetching order 7" in exc_info.value.diff

    def test_requests_concatenate_in_order(self, logstock, fixture_dir):
        logstock.get("/orders/1")
        logstock.post("/orders", json={"sku": "A1"})
        logstock.get("/orders/404")

        logstock.fetch("flow.log")

        assert (fixture_dir / "flow.log").read_text() == (
            "INFO [demo] Fetching order 1\n"
            "INFO [demo] Creating order sku=A1\n"
            "INFO [demo] Fetching order 404\n"
            "WARNING [demo] Order 404 not found\n"
        )

    def test_fetch_drains_captured_content(self, logstock, fixture_dir):
        (fixture_dir / "empty.log").write_text("")
        logstock.get("/orders/7")
        logstock.fetch("first.log")

        assert logstock.assert_matches("empty.log").actual == ""

    def test_existing_fixture_without_capture(self, client, fixture_dir):
        (fixture_dir / "expected.log").write_text("ERROR: boom\n")

        expected = _b64("ERROR: boom\n")

        response = client.get("/", headers=fetch_headers("expected.log"))

        assert response.status_code == 200
        assert response.headers["Logstock-Result"] == "compared"
        assert response.text == f'<p id="expected">{expected}</p>\n<p id="actual"></p>'

    def test_rewrite_overwrites_fixture(self, logstock, fixture_dir):
        (fixture_dir / "get.log").write_text("stale\n")
        logstock.get("/orders/7")

        result = logstock.fetch("get.log", rewrite=True)

        assert result.recorded
        assert (fixture_dir / "get.log").read_text() == "INFO [demo] Fetching order 7\n"

    def test_filters_header_applies_to_comparison(self, logstock, fixture_dir):
        (fixture_dir / "get.log").write_text("INFO [demo] Fetching order <id>\n")
        logstock.get("/orders/7")

        logstock.assert_matches(
            "get.log",
            filters=[{"type": "regex", "pattern": r"order \d+", "replacement": "order <id>"}],
        )


@pytest.mark.integration
class TestPassThrough:
    """Requests without directives are untouched."""

    def test_plain_requests_are_not_captured(self, client, logstock, app):
        response = client.get("/orders/3")
        assert response.json() == {"id": 3}

        assert app.state.logstock.store.load() == {}
        assert logstock.fetch("none.log").recorded

    def test_only_armed_requests_are_captured(self, client, logstock, fixture_dir):
        client.get("/orders/1")
        logstock.get("/orders/2")
        client.get("/orders/3")

        logstock.fetch("armed.log")

        assert (fixture_dir / "armed.log").read_text() == "INFO [demo] Fetching order 2\n"


@pytest.mark.integration
class TestResponses:
    """Captured requests keep their responses."""

    def test_error_status_preserved(self, logstock):
        response = logstock.get("/orders/404")

        assert response.status_code == 404
        assert response.json() == {"detail": "Order not found"}

    def test_streaming_body_is_captured(self, logstock, fixture_dir):
        response = logstock.get("/stream")

        assert response.text == "0\n1\n2\n"
        logstock.fetch("stream.log")
        assert (fixture_dir / "stream.log").read_text() == (
            "INFO [demo] chunk 0\nINFO [demo] chunk 1\nINFO [demo] chunk 2\n"
        )

    def test_records_flushed_when_endpoint_raises(self, app, fixture_dir):
        with TestClient(app, raise_server_exceptions=False) as client:
            logstock = LogstockClient(client, fetch_url="/health")
            response = logstock.get("/boom")
            assert response.status_code == 500

            logstock.fetch("boom.log")

        assert (fixture_dir / "boom.log").read_text() == "ERROR [demo] About to fail\n"


@pytest.mark.integration
class TestMalformedDirectives:
    """Undecodable headers are rejected before the app runs."""

    @pytest.mark.parametrize(
        "headers",
        [
            {"Logstock-Get-Content": "not base64!"},
            {"Logstock-Get-Content": _b64("../escape.log")},
            {"Logstock": "true", "Logstock-Filters": "[{"},
            {"Logstock": "true", "Logstock-Filters": '[{"type": "shout"}]'},
        ],
    )
    def test_rejected_with_400(self, client, app, headers):
        response = client.get("/orders/1", headers=headers)

        assert response.status_code == 400
        assert app.state.logstock.store.load() == {}

    def test_disabled_capture_header_passes_through(self, client, app):
        response = client.get("/orders/1", headers={"Logstock": "false"})

        assert response.status_code == 200
        assert app.state.logstock.store.load() == {}
