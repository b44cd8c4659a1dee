"""
Contracts shared by every livemd layer.

Layers import types from here, never from each other's implementations.
"""

from .base import (
    ErrorCode, Error, LivemdError, InvalidPath, RenderIoError,
    WatchSubscriptionError, StoreNotFound, InvalidStateTransition,
    DeliveryError, SourcePath, OutputPath, INDEX_OUTPUT,
)
from .events import (
    ChangeKind, ChangeEvent, ContentKind, Artifact, ReloadSignal,
    AuditEventType, AuditLogEntry,
)

__all__ = [
    "ErrorCode", "Error", "LivemdError", "InvalidPath", "RenderIoError",
    "WatchSubscriptionError", "StoreNotFound", "InvalidStateTransition",
    "DeliveryError", "SourcePath", "OutputPath", "INDEX_OUTPUT",
    "ChangeKind", "ChangeEvent", "ContentKind", "Artifact", "ReloadSignal",
    "AuditEventType", "AuditLogEntry",
]
