"""Error types for Waypoint.

Two styles coexist, mirroring how the code is layered:

- Low-level helpers (atomic writes) return ``Result`` values so callers
  decide how to react without try/except noise.
- Public store, tracker and gate operations raise the typed exceptions
  below. Nothing is retried or silently swallowed.

Every error carries a stable ``code`` so the CLI (and tests) can branch on
the kind of failure instead of parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class WaypointError(Exception):
    """Base error for all Waypoint failures."""

    default_code = "WAYPOINT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NotFound(WaypointError):
    """The logical key has no live checkpoint."""

    default_code = "CHECKPOINT_NOT_FOUND"


class StoreIOError(WaypointError):
    """File-system failure, distinct from a real absence."""

    default_code = "STORE_IO_ERROR"


class CorruptCheckpoint(WaypointError):
    """A checkpoint document failed to decode."""

    default_code = "CORRUPT_CHECKPOINT"


class InvalidArgument(WaypointError):
    """A caller supplied an argument the operation cannot accept."""

    default_code = "INVALID_ARGUMENT"


class CorruptIndex(WaypointError):
    """A topic index document exists but cannot be parsed."""

    default_code = "CORRUPT_INDEX"


# ============================================================================
# Result type
# ============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ValueError(f"Called unwrap_err on Ok: {self.value!r}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err: {self.error!r}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    return Ok(value)


def err(error: E) -> Err[E]:
    return Err(error)


def format_error(error: WaypointError) -> str:
    """Format an error for display to the user."""
    text = f"[{error.code}] {error.message}"
    path = error.context.get("path")
    if path and str(path) not in error.message:
        text += f" ({path})"
    return text
