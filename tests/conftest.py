"""Shared pytest fixtures for logstock tests."""

import logging
from pathlib import Path

import pytest

from logstock.capture.controller import CaptureController
from logstock.capture.manifest import ManifestStore, SegmentSummary
from logstock.settings import LogstockSettings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep LOGSTOCK_* variables from the outer environment out of tests."""
    import os

    for var in list(os.environ):
        if var.upper().startswith("LOGSTOCK_"):
            monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def fixture_dir(tmp_path: Path) -> Path:
    path = tmp_path / "fixtures"
    path.mkdir()
    return path


@pytest.fixture
def settings(data_dir: Path, fixture_dir: Path) -> LogstockSettings:
    return LogstockSettings(data_path=data_dir, fixture_path=fixture_dir, _env_file=None)


@pytest.fixture
def store(data_dir: Path) -> ManifestStore:
    return ManifestStore(data_dir)


@pytest.fixture
def controller(settings: LogstockSettings) -> CaptureController:
    return CaptureController(settings)


def write_segment(store: ManifestStore, tag: str, text: str) -> None:
    """Write a raw segment and index it, bypassing the segment writer."""
    store.segment_path(tag).write_text(text, encoding="utf-8")
    store.append(tag, SegmentSummary(records=text.count("\n"), size=len(text.encode("utf-8"))))


def make_record(message: str, level: int = logging.INFO, name: str = "app") -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, message, None, None)
