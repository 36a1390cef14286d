"""Filter pipeline applied to assembled log text.

Filters transform the whole captured log (``text -> text``) after assembly,
before it is compared against or stored as a fixture. Typical uses are
redacting volatile values (ids, durations, timestamps) and normalizing
whitespace.

Filters can be given as objects, or declaratively as JSON specs::

    [
        {"type": "regex", "pattern": "id=\\d+", "replacement": "id=<id>"},
        {"type": "drop_lines", "pattern": "^DEBUG "},
        {"type": "normalize"}
    ]
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Iterable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from logstock.exceptions import InvalidFilterSpecError


class LogFilter(ABC):
    """A transformation over a block of captured log text."""

    @abstractmethod
    def filter(self, log: str) -> str:
        ...

    def __call__(self, log: str) -> str:
        return self.filter(log)


_FLAG_NAMES = {
    "IGNORECASE": re.IGNORECASE,
    "MULTILINE": re.MULTILINE,
    "DOTALL": re.DOTALL,
}


@dataclass
class RegexFilter(LogFilter):
    """Substitute every match of ``pattern`` with ``replacement``."""

    pattern: str
    replacement: str = ""
    flags: int = re.MULTILINE
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._regex = re.compile(self.pattern, self.flags)

    def filter(self, log: str) -> str:
        return self._regex.sub(self.replacement, log)


@dataclass
class ReplaceFilter(LogFilter):
    """Literal search and replace."""

    search: str
    replacement: str = ""

    def filter(self, log: str) -> str:
        return log.replace(self.search, self.replacement)


@dataclass
class DropLinesFilter(LogFilter):
    """Remove every line matching ``pattern``."""

    pattern: str
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._regex = re.compile(self.pattern)

    def filter(self, log: str) -> str:
        lines = log.splitlines(keepends=True)
        return "".join(line for line in lines if not self._regex.search(line))


@dataclass
class NormalizeFilter(LogFilter):
    """Normalize line endings, strip trailing whitespace, keep one final newline."""

    def filter(self, log: str) -> str:
        if not log:
            return log
        lines = log.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        normalized = "\n".join(line.rstrip() for line in lines).rstrip()
        return normalized + "\n" if normalized else ""


@dataclass
class CallableFilter(LogFilter):
    """Adapt a plain ``str -> str`` function."""

    func: Callable[[str], str]

    def filter(self, log: str) -> str:
        return self.func(log)


# ---------------------------------------------------------------------------
# Declarative specs
# ---------------------------------------------------------------------------


class RegexFilterSpec(BaseModel):
    type: Literal["regex"]
    pattern: str
    replacement: str = ""
    flags: list[Literal["IGNORECASE", "MULTILINE", "DOTALL"]] = Field(
        default_factory=lambda: ["MULTILINE"]
    )

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid regular expression {v!r}: {e}")
        return v

    def build(self) -> LogFilter:
        flags = 0
        for name in self.flags:
            flags |= _FLAG_NAMES[name]
        return RegexFilter(self.pattern, self.replacement, flags)


class ReplaceFilterSpec(BaseModel):
    type: Literal["replace"]
    search: str = Field(min_length=1)
    replacement: str = ""

    def build(self) -> LogFilter:
        return ReplaceFilter(self.search, self.replacement)


class DropLinesFilterSpec(BaseModel):
    type: Literal["drop_lines"]
    pattern: str

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid regular expression {v!r}: {e}")
        return v

    def build(self) -> LogFilter:
        return DropLinesFilter(self.pattern)


class NormalizeFilterSpec(BaseModel):
    type: Literal["normalize"]

    def build(self) -> LogFilter:
        return NormalizeFilter()


FilterSpec = Annotated[
    Union[RegexFilterSpec, ReplaceFilterSpec, DropLinesFilterSpec, NormalizeFilterSpec],
    Field(discriminator="type"),
]

_spec_list = TypeAdapter(list[FilterSpec])


def build_filters(specs: Iterable[Any]) -> list[LogFilter]:
    """Validate declarative filter specs and build the filters they describe."""
    try:
        parsed = _spec_list.validate_python(list(specs))
    except (ValidationError, TypeError) as e:
        raise InvalidFilterSpecError(f"Invalid filter spec: {e}") from e
    return [spec.build() for spec in parsed]


def parse_filter_specs(raw: Union[str, bytes]) -> list[LogFilter]:
    """Build filters from a JSON list of specs."""
    try:
        specs = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidFilterSpecError(f"Filter specs are not valid JSON: {e}") from e
    if not isinstance(specs, list):
        raise InvalidFilterSpecError("Filter specs must be a JSON list")
    return build_filters(specs)


def _coerce(f: Union[LogFilter, Callable[[str], str]]) -> LogFilter:
    if isinstance(f, LogFilter):
        return f
    if callable(f):
        return CallableFilter(f)
    raise TypeError(f"Not a log filter: {f!r}")


class FilterPipeline:
    """Ordered sequence of filters, applied left to right."""

    def __init__(self, filters: Optional[Iterable[Union[LogFilter, Callable]]] = None) -> None:
        self._filters: list[LogFilter] = [_coerce(f) for f in (filters or [])]

    def add_filter(self, f: Union[LogFilter, Callable[[str], str]]) -> None:
        self._filters.append(_coerce(f))

    def set_filters(self, filters: Iterable[Union[LogFilter, Callable[[str], str]]]) -> None:
        self._filters = [_coerce(f) for f in filters]

    def clear_filters(self) -> None:
        self._filters = []

    def get_filters(self) -> list[LogFilter]:
        return list(self._filters)

    def apply(self, text: str) -> str:
        """Run every filter in order; an empty pipeline returns ``text`` unchanged."""
        for f in self._filters:
            text = f.filter(text)
        return text

    def merged(self, extra: Iterable[Union[LogFilter, Callable]]) -> FilterPipeline:
        """A new pipeline with ``extra`` appended after this pipeline's filters."""
        return FilterPipeline([*self._filters, *extra])

    def __len__(self) -> int:
        return len(self._filters)

    def __iter__(self) -> Iterator[LogFilter]:
        return iter(list(self._filters))
