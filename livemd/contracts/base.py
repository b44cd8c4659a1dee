"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All value types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- Layers may import types but MUST NOT modify this module
- Path types validate on construction: an escaping path never exists
- Exceptions carry an ErrorCode and can be turned into an Error record
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Tuple
from enum import Enum, auto
import posixpath


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for every failure the pipeline can surface.
    """
    # Path errors
    INVALID_PATH = auto()

    # Render errors
    RENDER_IO_FAILED = auto()

    # Watch errors
    WATCH_SUBSCRIPTION_FAILED = auto()

    # Store errors
    ARTIFACT_NOT_FOUND = auto()

    # Pipeline errors
    INVALID_STATE_TRANSITION = auto()

    # Broadcast errors
    DELIVERY_FAILED = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data here: they can be stored in the audit log and in
    the FAILED state of a source.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def with_context(self, key: str, value: str) -> Error:
        """Return new Error with additional context (immutable)."""
        return Error(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            context=self.context + ((key, value),)
        )


class LivemdError(Exception):
    """Base class for every error raised by livemd."""

    code: ErrorCode

    def __init__(self, message: str, **context: str):
        super().__init__(message)
        self.message = message
        self.context = tuple((k, str(v)) for k, v in sorted(context.items()))

    def to_error(self) -> Error:
        return Error(
            code=self.code,
            message=self.message,
            timestamp=datetime.now(timezone.utc),
            context=self.context
        )


class InvalidPath(LivemdError):
    """Path escapes the content root or is otherwise unusable."""
    code = ErrorCode.INVALID_PATH


class RenderIoError(LivemdError):
    """Source file could not be read mid-render."""
    code = ErrorCode.RENDER_IO_FAILED


class WatchSubscriptionError(LivemdError):
    """The filesystem notification mechanism failed. Always fatal."""
    code = ErrorCode.WATCH_SUBSCRIPTION_FAILED


class StoreNotFound(LivemdError):
    """Requested output path has no artifact."""
    code = ErrorCode.ARTIFACT_NOT_FOUND


class InvalidStateTransition(LivemdError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class DeliveryError(LivemdError):
    """A reload signal could not be handed to one client connection."""
    code = ErrorCode.DELIVERY_FAILED


# =============================================================================
# IDENTITY TYPES (Immutable, validated)
# =============================================================================

def normalize_relative(raw: str) -> str:
    """
    Normalize a relative POSIX path, rejecting anything that could escape
    its root. Raises InvalidPath.
    """
    if not isinstance(raw, str) or not raw:
        raise InvalidPath("path must be a non-empty string", path=repr(raw))
    if "\x00" in raw:
        raise InvalidPath("path contains a NUL byte", path=repr(raw))
    if "\\" in raw:
        raise InvalidPath("path contains a backslash", path=raw)
    if raw.startswith("/"):
        raise InvalidPath("path must be relative", path=raw)

    segments = raw.split("/")
    if ".." in segments:
        raise InvalidPath("path contains a traversal segment", path=raw)

    normalized = posixpath.normpath(raw)
    if normalized in (".", "") or normalized.startswith(".."):
        raise InvalidPath("path does not name a file under the root", path=raw)
    return normalized


@dataclass(frozen=True, order=True)
class SourcePath:
    """
    A document or asset under the content root.
    Always a normalized, relative POSIX path.
    """
    value: str

    def __post_init__(self):
        object.__setattr__(self, 'value', normalize_relative(self.value))

    @property
    def suffix(self) -> str:
        return posixpath.splitext(self.value)[1]

    @property
    def name(self) -> str:
        return posixpath.basename(self.value)

    @property
    def stem(self) -> str:
        return posixpath.splitext(posixpath.basename(self.value))[0]

    @property
    def parent(self) -> str:
        return posixpath.dirname(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class OutputPath:
    """A servable artifact in the output namespace."""
    value: str

    def __post_init__(self):
        object.__setattr__(self, 'value', normalize_relative(self.value))

    @property
    def suffix(self) -> str:
        return posixpath.splitext(self.value)[1]

    @property
    def name(self) -> str:
        return posixpath.basename(self.value)

    @property
    def stem(self) -> str:
        return posixpath.splitext(posixpath.basename(self.value))[0]

    @property
    def parent(self) -> str:
        return posixpath.dirname(self.value)

    def __str__(self) -> str:
        return self.value


INDEX_OUTPUT = "index.html"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
