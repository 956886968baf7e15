"""
Error types and error logging utilities for ideastore.

The store raises a small hierarchy rooted at IdeaStoreError. Not-found is
never an exception: lookups return None and delete returns False.

The CLI logs full stack traces for debugging while showing clean messages
to users.
"""

import os
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Generic, Optional, TypeVar

T = TypeVar("T")


class IdeaStoreError(Exception):
    """Base class for all ideastore errors."""


class ValidationError(IdeaStoreError, ValueError):
    """Missing or malformed input, rejected before any I/O."""


class InvalidInput(ValidationError):
    """Text handed to an embedding provider was empty."""


class ProviderUnavailable(IdeaStoreError):
    """The embedding provider failed or timed out."""


class IndexInconsistency(IdeaStoreError):
    """Vector dimensionality mismatch or missing index. Not retryable."""


class StorageError(IdeaStoreError):
    """The record store or vector index failed."""


@dataclass
class Result(Generic[T]):
    """
    A value or an error, never both.

    Lets a caller decide what to do with a failed repository call (show
    cached data, retry, give up) instead of the store guessing for it.
    """
    value: Optional[T] = None
    error: Optional[IdeaStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: Any) -> Any:
        return default if self.error is not None else self.value


async def capture(awaitable: Awaitable[T]) -> Result[T]:
    """
    Await a repository call and wrap its outcome in a Result.

    Only IdeaStoreError is captured. Anything else is a bug and propagates.
    """
    try:
        return Result(value=await awaitable)
    except IdeaStoreError as e:
        return Result(error=e)


def _error_log_path() -> Path:
    """Resolve error log path, respecting IDEASTORE_CONFIG_DIR."""
    config_dir = os.environ.get("IDEASTORE_CONFIG_DIR")
    if config_dir:
        return Path(config_dir) / "ideastore-errors.log"
    return Path.home() / ".ideastore" / "ideastore-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # error log is best effort
    return log_path
