"""
Source State Machine
====================

Lifecycle of one source inside the pipeline:

    FRESH --> STALE --> RENDERING --> FRESH
                            |
                            +--> FAILED --> STALE   (retried on next event)

A source the tracker has never seen enters at STALE. Removal forgets
the source entirely.

INVARIANT: only the transitions above are possible; anything else is a
bug in the Coordinator and raises InvalidStateTransition.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional

from ..contracts.base import SourcePath, Error, InvalidStateTransition


class SourceState(Enum):
    FRESH = "fresh"
    STALE = "stale"
    RENDERING = "rendering"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Mapping[Optional[SourceState], FrozenSet[SourceState]] = {
    None: frozenset({SourceState.STALE}),
    SourceState.FRESH: frozenset({SourceState.STALE}),
    SourceState.STALE: frozenset({SourceState.RENDERING}),
    SourceState.RENDERING: frozenset({SourceState.FRESH, SourceState.FAILED}),
    SourceState.FAILED: frozenset({SourceState.STALE}),
}


@dataclass(frozen=True)
class SourceStatus:
    """Current state plus the error that put a source into FAILED."""
    state: SourceState
    last_error: Optional[Error] = None


class SourceStateTracker:

    def __init__(self):
        self._statuses: Dict[SourcePath, SourceStatus] = {}

    def state_of(self, source: SourcePath) -> Optional[SourceState]:
        status = self._statuses.get(source)
        return status.state if status else None

    def status_of(self, source: SourcePath) -> Optional[SourceStatus]:
        return self._statuses.get(source)

    def transition(
        self,
        source: SourcePath,
        target: SourceState,
        error: Optional[Error] = None
    ) -> SourceStatus:
        current = self.state_of(source)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(
                "illegal source state transition",
                source=source.value,
                current=current.value if current else "unknown",
                target=target.value,
            )
        status = SourceStatus(state=target, last_error=error)
        self._statuses[source] = status
        return status

    def forget(self, source: SourcePath):
        self._statuses.pop(source, None)

    def knows(self, source: SourcePath) -> bool:
        return source in self._statuses

    def snapshot(self) -> Dict[SourcePath, SourceState]:
        return {source: status.state for source, status in self._statuses.items()}
