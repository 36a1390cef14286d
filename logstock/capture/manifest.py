"""Manifest store: the index of captured log segments.

The manifest maps each segment tag to a small summary and lives in a single
``index.data`` file next to the ``<tag>.log`` segments it describes. It is
the single source of truth for which segments exist.

Locking discipline (``fcntl.flock`` on the index file):

- reads take a shared lock,
- every mutation (append, evict, consume, orphan sweep) takes an exclusive
  lock spanning the whole read-modify-write.

The consuming read unlinks the index while holding its lock, so every
acquisition re-checks that the locked descriptor is still the file at
``index.data`` and reopens otherwise.
"""

import fcntl
import json
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from logstock.exceptions import DuplicateTagError, ManifestError

logger = logging.getLogger(__name__)

INDEX_FILE = "index.data"
SEGMENT_SUFFIX = ".log"

# Tags become file names; keep them to a single safe path component
_TAG_RE = re.compile(r"^[A-Za-z0-9_\-.]+$")


@dataclass
class SegmentSummary:
    """Lightweight metadata kept in the manifest for each segment."""

    records: int = 0
    size: int = 0
    levels: dict[str, int] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "records": self.records,
            "size": self.size,
            "levels": dict(self.levels),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SegmentSummary":
        return cls(
            records=int(data.get("records", 0)),
            size=int(data.get("size", 0)),
            levels={str(k): int(v) for k, v in (data.get("levels") or {}).items()},
            created_at=float(data.get("created_at", 0.0)),
        )


# Insertion-ordered: oldest capture first
Manifest = dict[str, SegmentSummary]


def validate_tag(tag: str) -> str:
    """Return the tag unchanged, or raise ValueError if it is not a safe file name."""
    if not tag or tag in (".", "..") or not _TAG_RE.match(tag):
        raise ValueError(f"Invalid segment tag: {tag!r}")
    return tag


def _decode(raw: bytes) -> Manifest:
    if not raw.strip():
        return {}
    data = json.loads(raw.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("manifest is not a JSON object")
    return {str(tag): SegmentSummary.from_dict(summary) for tag, summary in data.items()}


def _encode(manifest: Manifest) -> bytes:
    return json.dumps(
        {tag: summary.to_dict() for tag, summary in manifest.items()},
        separators=(",", ":"),
    ).encode("utf-8")


class ManifestStore:
    """Owns ``index.data`` and the segment files it lists."""

    def __init__(
        self,
        data_path: str | Path,
        file_mode: Optional[int] = None,
        history_size: Optional[int] = None,
    ) -> None:
        self.data_path = Path(data_path)
        self.file_mode = file_mode
        self.history_size = history_size

    @property
    def index_path(self) -> Path:
        return self.data_path / INDEX_FILE

    def segment_path(self, tag: str) -> Path:
        """Path of the segment file for ``tag``."""
        return self.data_path / f"{validate_tag(tag)}{SEGMENT_SUFFIX}"

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _acquire(self, exclusive: bool, create: bool) -> Optional[int]:
        """Open and flock the index file, returning the descriptor.

        Returns None when the index does not exist and ``create`` is False.
        """
        lock = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        if create:
            flags = os.O_RDWR | os.O_CREAT
        elif exclusive:
            flags = os.O_RDWR
        else:
            flags = os.O_RDONLY

        while True:
            try:
                fd = os.open(self.index_path, flags, 0o666)
            except FileNotFoundError:
                if create:
                    raise
                return None

            try:
                fcntl.flock(fd, lock)
                locked = os.fstat(fd)
                try:
                    current = os.stat(self.index_path)
                except FileNotFoundError:
                    current = None
                if current is not None and (current.st_dev, current.st_ino) == (
                    locked.st_dev,
                    locked.st_ino,
                ):
                    if create and self.file_mode is not None:
                        os.fchmod(fd, self.file_mode)
                    return fd
            except BaseException:
                os.close(fd)
                raise

            # Index was consumed while we waited for the lock
            os.close(fd)
            if not create:
                return None

    @contextmanager
    def _locked_index(
        self, exclusive: bool = False, create: bool = False
    ) -> Iterator[Optional[BinaryIO]]:
        fd = self._acquire(exclusive, create)
        if fd is None:
            yield None
            return
        mode = "r+b" if (exclusive or create) else "rb"
        with os.fdopen(fd, mode) as fh:
            try:
                yield fh
            finally:
                fh.flush()
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read_locked(self, fh: BinaryIO, strict: bool = True) -> Manifest:
        fh.seek(0)
        raw = fh.read()
        try:
            return _decode(raw)
        except (ValueError, TypeError, AttributeError) as e:
            if strict:
                raise ManifestError(f"Cannot decode manifest {self.index_path}: {e}") from e
            logger.warning("Ignoring unreadable manifest %s: %s", self.index_path, e)
            return {}

    def _write_locked(self, fh: BinaryIO, manifest: Manifest) -> None:
        fh.seek(0)
        fh.truncate()
        fh.write(_encode(manifest))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load(self) -> Manifest:
        """
        Read the manifest under a shared lock.

        Never fails for "no data yet": a missing, empty, locked-out or
        undecodable index yields an empty manifest.
        """
        try:
            with self._locked_index() as fh:
                if fh is None:
                    return {}
                return self._read_locked(fh, strict=False)
        except OSError as e:
            logger.warning("Cannot read manifest %s: %s", self.index_path, e)
            return {}

    def append(self, tag: str, summary: SegmentSummary) -> list[str]:
        """
        Add an entry under an exclusive lock, evicting down to history_size.

        Returns:
            Tags evicted to make room (oldest first).

        Raises:
            DuplicateTagError: If ``tag`` is already indexed.
            ManifestError: If the existing index cannot be decoded.
        """
        validate_tag(tag)
        with self._locked_index(exclusive=True, create=True) as fh:
            manifest = self._read_locked(fh)
            if tag in manifest:
                raise DuplicateTagError(f"Segment tag already indexed: {tag}")
            manifest[tag] = summary
            evicted: list[str] = []
            if self.history_size is not None:
                evicted = self._evict_locked(manifest, self.history_size)
            self._write_locked(fh, manifest)

        logger.debug("Indexed segment %s (%d records)", tag, summary.records)
        if evicted:
            logger.debug("Evicted %d old segment(s): %s", len(evicted), ", ".join(evicted))
        return evicted

    def evict_oldest(self, keep: int) -> list[str]:
        """Drop the oldest entries and their segments until at most ``keep`` remain."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        with self._locked_index(exclusive=True) as fh:
            if fh is None:
                return []
            manifest = self._read_locked(fh)
            evicted = self._evict_locked(manifest, keep)
            if evicted:
                self._write_locked(fh, manifest)
        return evicted

    def _evict_locked(self, manifest: Manifest, keep: int) -> list[str]:
        excess = len(manifest) - keep
        if excess <= 0:
            return []

        evicted = []
        for tag in list(manifest)[:excess]:
            # Segment goes first; an entry is only dropped once its file is gone
            try:
                self.segment_path(tag).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Cannot evict segment %s, keeping its entry: %s", tag, e)
                continue
            del manifest[tag]
            evicted.append(tag)
        return evicted

    def consume(self) -> list[tuple[str, str]]:
        """
        Consuming read: return every segment's text in manifest order, then
        delete the segments and the index.

        A second call returns an empty list until something new is captured.
        Segments listed but missing contribute an empty string.
        """
        try:
            with self._locked_index(exclusive=True) as fh:
                if fh is None:
                    return []
                manifest = self._read_locked(fh, strict=False)
                contents = [(tag, self._take_segment(tag)) for tag in manifest]
                self.index_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot consume manifest %s: %s", self.index_path, e)
            return []

        logger.debug("Consumed %d segment(s) from %s", len(contents), self.data_path)
        return contents

    def _take_segment(self, tag: str) -> str:
        path = self.segment_path(tag)
        try:
            text = path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            logger.warning("Segment %s is listed in the manifest but missing", tag)
            return ""
        except OSError as e:
            logger.warning("Cannot read segment %s: %s", tag, e)
            text = ""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot delete consumed segment %s: %s", tag, e)
        return text

    def peek(self) -> list[tuple[str, str]]:
        """Non-consuming read of every indexed segment, in manifest order."""
        contents = []
        for tag in self.load():
            try:
                text = self.segment_path(tag).read_bytes().decode("utf-8", errors="replace")
            except OSError:
                text = ""
            contents.append((tag, text))
        return contents

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def orphans(self, min_age: float = 0.0) -> list[Path]:
        """Segment files with no manifest entry, older than ``min_age`` seconds."""
        return self._find_orphans(self.load(), min_age)

    def _find_orphans(self, manifest: Manifest, min_age: float) -> list[Path]:
        if not self.data_path.is_dir():
            return []
        cutoff = time.time() - min_age
        indexed = {f"{tag}{SEGMENT_SUFFIX}" for tag in manifest}
        found = []
        for path in sorted(self.data_path.glob(f"*{SEGMENT_SUFFIX}")):
            if path.name in indexed:
                continue
            try:
                if path.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                continue
            found.append(path)
        return found

    def remove_orphans(self, min_age: float = 60.0) -> list[Path]:
        """
        Delete segment files that no manifest entry references.

        Segments are written before they are indexed, so files younger than
        ``min_age`` seconds are left alone in case a request is still in flight.
        """
        with self._locked_index(exclusive=True) as fh:
            manifest = self._read_locked(fh) if fh is not None else {}
            removed = []
            for path in self._find_orphans(manifest, min_age):
                path.unlink(missing_ok=True)
                removed.append(path)

        if removed:
            logger.info("Removed %d orphaned segment(s) from %s", len(removed), self.data_path)
        return removed
