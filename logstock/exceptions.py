"""
Logstock exceptions.

Read-path problems (missing index, lock contention, missing fixture) are
recovered where they happen and never show up here. These exceptions cover
misconfiguration, malformed control directives and write-path failures.
"""


class LogstockError(Exception):
    """Base class for all logstock errors."""

    pass


class ConfigurationError(LogstockError):
    """Raised at startup when data or fixture directories are unusable."""

    pass


class DuplicateTagError(LogstockError):
    """Raised when a segment tag is written or indexed twice."""

    pass


class InvalidFixtureNameError(LogstockError, ValueError):
    """Raised for fixture names that would escape the fixture directory."""

    pass


class InvalidFilterSpecError(LogstockError, ValueError):
    """Raised when a declarative filter spec cannot be built."""

    pass


class InvalidDirectiveError(LogstockError, ValueError):
    """Raised when a control header cannot be decoded into a directive."""

    pass


class CaptureStateError(LogstockError):
    """Raised on an illegal capture session state transition."""

    pass


class ManifestError(LogstockError):
    """Raised when index.data cannot be decoded on the write path."""

    pass
