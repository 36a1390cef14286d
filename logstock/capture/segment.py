"""Segment writer: serializes one capture session's log records to disk.

Each capture session mints a fresh tag, so a segment file is created once
and never merged into.
"""

import logging
import os
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

from logstock.exceptions import DuplicateTagError
from logstock.settings import DEFAULT_LINE_FORMAT

from .manifest import ManifestStore, SegmentSummary

Record = Union[logging.LogRecord, str]


def new_tag() -> str:
    """Mint a unique, time-sortable segment tag."""
    return f"{datetime.now(timezone.utc):%Y%m%d%H%M%S%f}-{uuid.uuid4().hex[:8]}"


class SegmentWriter:
    """Writes ``<tag>.log`` files into the store's data directory."""

    def __init__(
        self,
        store: ManifestStore,
        formatter: Optional[logging.Formatter] = None,
        file_mode: Optional[int] = None,
    ) -> None:
        self.store = store
        self.formatter = formatter or logging.Formatter(DEFAULT_LINE_FORMAT)
        self.file_mode = file_mode

    def format_record(self, record: Record) -> str:
        if isinstance(record, logging.LogRecord):
            return self.formatter.format(record)
        return str(record)

    def summarize(self, records: Sequence[Record], size: int = 0) -> SegmentSummary:
        levels = Counter(
            record.levelname if isinstance(record, logging.LogRecord) else "RAW"
            for record in records
        )
        return SegmentSummary(records=len(records), size=size, levels=dict(levels))

    def write(self, tag: str, records: Sequence[Record]) -> SegmentSummary:
        """
        Write ``records`` one per line into the segment for ``tag``.

        Returns:
            The summary to index in the manifest.

        Raises:
            DuplicateTagError: If a segment already exists for ``tag``.
        """
        text = "".join(f"{self.format_record(record)}\n" for record in records)
        data = text.encode("utf-8")
        path = self.store.segment_path(tag)
        try:
            with open(path, "xb") as f:
                f.write(data)
        except FileExistsError:
            raise DuplicateTagError(f"Segment already exists: {path.name}")

        if self.file_mode is not None:
            os.chmod(path, self.file_mode)

        return self.summarize(records, size=len(data))
