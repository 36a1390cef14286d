"""Fixture comparator.

Drains the captured log text from the manifest store and either pairs it
with a stored fixture for the caller to diff, or records it as the new
fixture when none exists (or a rewrite was requested).
"""

import difflib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from logstock.exceptions import InvalidFixtureNameError

from .filters import FilterPipeline
from .manifest import ManifestStore

logger = logging.getLogger(__name__)


def unified_log_diff(expected: str, actual: str, fixture_name: str) -> str:
    """Unified diff from a fixture to captured content."""
    return "".join(
        difflib.unified_diff(
            expected.splitlines(keepends=True),
            actual.splitlines(keepends=True),
            fromfile=f"fixture: {fixture_name}",
            tofile="actual log",
        )
    )


@dataclass(frozen=True)
class Comparison:
    """A stored fixture paired with freshly captured content."""

    fixture_name: str
    expected: str
    actual: str

    @property
    def matches(self) -> bool:
        return self.expected == self.actual

    def diff(self) -> str:
        return unified_log_diff(self.expected, self.actual, self.fixture_name)


@dataclass(frozen=True)
class Recorded:
    """No comparison was made; ``actual`` was written as the fixture."""

    fixture_name: str
    fixture_path: Path
    actual: str


ContentResult = Union[Comparison, Recorded]


def validate_fixture_name(name: str) -> str:
    """
    Check that a fixture name stays inside the fixture directory.

    Names are relative, ``/``-separated paths (``orders/create.log``).
    """
    if not name or "\x00" in name or "\\" in name:
        raise InvalidFixtureNameError(f"Invalid fixture name: {name!r}")
    # Empty parts cover absolute paths, trailing and doubled slashes
    if any(part in ("", ".", "..") for part in name.split("/")):
        raise InvalidFixtureNameError(f"Invalid fixture name: {name!r}")
    return name


class FixtureComparator:
    """Compares captured log content against named fixture files."""

    def __init__(
        self,
        store: ManifestStore,
        fixture_path: Union[str, Path],
        file_mode: Optional[int] = None,
        dir_mode: int = 0o775,
    ) -> None:
        self.store = store
        self.fixture_path = Path(fixture_path)
        self.file_mode = file_mode
        self.dir_mode = dir_mode

    def fixture_file(self, fixture_name: str) -> Path:
        return self.fixture_path / validate_fixture_name(fixture_name)

    # ------------------------------------------------------------------
    # Actual content
    # ------------------------------------------------------------------

    def get_actual_content(self) -> str:
        """
        Consuming read of everything captured so far.

        Segments are concatenated in manifest order and deleted together with
        the index, so an immediate second call returns "".
        """
        return "".join(text for _, text in self.store.consume())

    def peek_actual_content(self) -> str:
        """Captured content without consuming it."""
        return "".join(text for _, text in self.store.peek())

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------

    def read_fixture(self, fixture_name: str) -> Optional[str]:
        """Fixture contents, or None when the fixture does not exist."""
        path = self.fixture_file(fixture_name)
        try:
            return path.read_bytes().decode("utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read fixture %s, comparing against empty content: %s", path, e)
            return ""

    def write_fixture(self, fixture_name: str, content: str) -> Path:
        path = self.fixture_file(fixture_name)
        self._ensure_dir(path.parent)
        path.write_bytes(content.encode("utf-8"))
        if self.file_mode is not None:
            os.chmod(path, self.file_mode)
        return path

    def _ensure_dir(self, directory: Path) -> None:
        missing = []
        current = directory
        while not current.exists():
            missing.append(current)
            current = current.parent
        for path in reversed(missing):
            path.mkdir(exist_ok=True)
            os.chmod(path, self.dir_mode)

    def get_content(
        self,
        fixture_name: str,
        rewrite: bool = False,
        filters: Optional[FilterPipeline] = None,
    ) -> ContentResult:
        """
        Drain the captured content and compare it against ``fixture_name``.

        Returns:
            Comparison(expected, actual) when the fixture exists and ``rewrite``
            is False. Otherwise the filtered content is written as the fixture
            and Recorded is returned.
        """
        validate_fixture_name(fixture_name)
        actual = self.get_actual_content()
        if filters is not None:
            actual = filters.apply(actual)

        if not rewrite:
            expected = self.read_fixture(fixture_name)
            if expected is not None:
                return Comparison(fixture_name=fixture_name, expected=expected, actual=actual)

        path = self.write_fixture(fixture_name, actual)
        logger.info("Recorded log fixture %s (%d bytes)", path, len(actual))
        return Recorded(fixture_name=fixture_name, fixture_path=path, actual=actual)
