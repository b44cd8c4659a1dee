"""
Event Contracts

Immutable messages that flow between the layers:

    Watcher --ChangeEvent--> Coordinator --Artifact--> Store
    Coordinator --ReloadSignal--> Broadcaster --> browser

Nothing here has behavior beyond construction helpers.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .base import SourcePath, OutputPath, utc_now


# =============================================================================
# FILESYSTEM CHANGES
# =============================================================================

class ChangeKind(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """
    A debounced change to one source.
    Produced by the Watcher, consumed exactly once by the Coordinator.
    """
    source: SourcePath
    kind: ChangeKind

    @property
    def is_removal(self) -> bool:
        return self.kind is ChangeKind.REMOVED


# =============================================================================
# ARTIFACTS
# =============================================================================

class ContentKind(Enum):
    HTML = "html"
    ASSET = "asset"


@dataclass(frozen=True)
class Artifact:
    """
    One complete, servable rendering of a source.

    Replaced as a whole on every put; readers hold either the previous
    or the next instance, never a mix of the two.
    """
    path: OutputPath
    body: bytes
    version: int
    content_kind: ContentKind
    source: Optional[SourcePath] = None
    rendered_at: datetime = field(default_factory=utc_now)

    @property
    def size(self) -> int:
        return len(self.body)


# =============================================================================
# RELOAD SIGNALS
# =============================================================================

@dataclass(frozen=True)
class ReloadSignal:
    """
    Tells connected browsers to refresh.
    path is None for a full reload (e.g. after a removal).
    """
    path: Optional[OutputPath] = None
    issued_at: datetime = field(default_factory=utc_now)

    @property
    def is_full_reload(self) -> bool:
        return self.path is None


# =============================================================================
# AUDIT
# =============================================================================

class AuditEventType(Enum):
    RENDER = "render"
    REMOVAL = "removal"
    FAILURE = "failure"
    BROADCAST = "broadcast"
    SUBSCRIPTION = "subscription"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of one thing a layer did."""
    entry_id: str
    event_type: AuditEventType
    timestamp: datetime
    layer: str
    action: str
    entity_id: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
