"""
Centralized settings configuration using Pydantic BaseSettings.

Every option can be set through a ``LOGSTOCK_`` prefixed environment variable
or a ``.env`` file. Use get_settings() for dependency injection compatibility
in FastAPI.

Usage:
    from logstock.settings import get_settings, LogstockSettings

    settings = get_settings()
    print(settings.data_path)

    # Test settings without touching the environment
    settings = LogstockSettings(data_path=tmp_path / "data", _env_file=None)
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from logstock.exceptions import ConfigurationError, InvalidFilterSpecError

DEFAULT_LINE_FORMAT = "%(levelname)s [%(name)s] %(message)s"


def _parse_mode(value: Any) -> Any:
    """Accept permission bits as ints or octal strings ("0664", "0o664")."""
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        if text.startswith("0o"):
            text = text[2:]
        try:
            return int(text, 8)
        except ValueError:
            raise ValueError(f"Invalid permission mode '{value}', expected octal digits")
    return value


class LogstockSettings(BaseSettings):
    """Capture store settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LOGSTOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    data_path: Path = Field(
        default=Path("runtime/logstock"),
        description="Directory holding index.data and captured <tag>.log segments",
    )
    fixture_path: Path = Field(
        default=Path("tests/data/logstock"),
        description="Directory holding expected log fixtures",
    )
    file_mode: Optional[int] = Field(
        default=None,
        description="Permission bits for created files (chmod, no umask). None keeps the umask default",
    )
    dir_mode: int = Field(
        default=0o775,
        description="Permission bits for created directories",
    )
    history_size: int = Field(
        default=50,
        ge=1,
        description="Maximum manifest entries kept before the oldest segments are evicted",
    )

    # -------------------------------------------------------------------------
    # Capture behaviour
    # -------------------------------------------------------------------------
    rewrite: bool = Field(
        default=False,
        description="Overwrite fixtures with the captured content instead of comparing",
    )
    enable_debug_logs: bool = Field(
        default=False,
        description="Capture records emitted by logstock's own loggers",
    )
    filters: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Default filter specs applied to captured content before comparison",
    )
    line_format: str = Field(
        default=DEFAULT_LINE_FORMAT,
        description="logging format string used when writing segment lines",
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("file_mode", "dir_mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> Any:
        """Parse octal permission strings."""
        return _parse_mode(v)

    @field_validator("file_mode", "dir_mode")
    @classmethod
    def validate_mode_range(cls, v: Optional[int]) -> Optional[int]:
        """Permission bits must fit in 0o7777."""
        if v is not None and not 0 <= v <= 0o7777:
            raise ValueError(f"Invalid permission mode {v:o}, must be between 0 and 7777")
        return v

    @field_validator("filters")
    @classmethod
    def validate_filters(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Reject filter specs that cannot be built."""
        from logstock.capture.filters import build_filters

        try:
            build_filters(v)
        except InvalidFilterSpecError as e:
            raise ValueError(str(e))
        return v

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def prepare_directories(self) -> None:
        """
        Create the data and fixture directories and check they are writable.

        Raises:
            ConfigurationError: If a directory cannot be created or written.
        """
        for label, path in (("data_path", self.data_path), ("fixture_path", self.fixture_path)):
            if path.exists() and not path.is_dir():
                raise ConfigurationError(f"{label} '{path}' exists and is not a directory")
            if not path.exists():
                try:
                    path.mkdir(parents=True, exist_ok=True)
                    os.chmod(path, self.dir_mode)
                except OSError as e:
                    raise ConfigurationError(f"Cannot create {label} '{path}': {e}") from e
            if not os.access(path, os.W_OK | os.X_OK):
                raise ConfigurationError(f"{label} '{path}' is not writable")


@lru_cache
def get_settings() -> LogstockSettings:
    """
    Get cached settings instance.

    For testing, clear the cache with get_settings.cache_clear().
    """
    return LogstockSettings()
