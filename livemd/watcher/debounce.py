"""
Debounce Buffer
===============

Pure coalescing logic for raw filesystem notifications. Time is passed
in by the caller, so every rule here is testable without sleeping.

RULES:
- One raw event waits out the window and is emitted as-is
- Several creates/modifies within the window collapse to one MODIFIED
- A removal replaces a pending create/modify (the file is gone)
- A create/modify arriving while a removal is pending flushes the
  removal first: removals are never merged with modifications
- The deadline trails the latest event but never exceeds
  first_seen + max_delay, so a file written continuously still renders
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..contracts.base import SourcePath
from ..contracts.events import ChangeEvent, ChangeKind


@dataclass
class _Pending:
    kind: ChangeKind
    first_seen: float
    deadline: float
    count: int = 1


class DebounceBuffer:

    def __init__(self, window: float, max_delay: Optional[float] = None):
        if window < 0:
            raise ValueError("window must not be negative")
        self._window = window
        self._max_delay = max_delay if max_delay is not None else window * 10
        self._pending: Dict[SourcePath, _Pending] = {}

    @property
    def window(self) -> float:
        return self._window

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, source: SourcePath, kind: ChangeKind, now: float) -> List[ChangeEvent]:
        """
        Record a raw event. Returns events that must be emitted right
        away (a flushed removal), usually none.
        """
        pending = self._pending.get(source)
        if pending is None:
            self._pending[source] = _Pending(kind, now, self._deadline(now, now))
            return []

        if pending.kind is ChangeKind.REMOVED and kind is not ChangeKind.REMOVED:
            flushed = [ChangeEvent(source, ChangeKind.REMOVED)]
            self._pending[source] = _Pending(kind, now, self._deadline(now, now))
            return flushed

        if kind is ChangeKind.REMOVED:
            pending.kind = ChangeKind.REMOVED
        else:
            pending.kind = ChangeKind.MODIFIED
        pending.count += 1
        pending.deadline = self._deadline(pending.first_seen, now)
        return []

    def pop_due(self, now: float) -> List[ChangeEvent]:
        """Emit every path whose quiet period has elapsed."""
        due = [s for s, p in self._pending.items() if p.deadline <= now]
        due.sort(key=lambda s: self._pending[s].first_seen)
        return [ChangeEvent(s, self._pending.pop(s).kind) for s in due]

    def next_deadline(self) -> Optional[float]:
        if not self._pending:
            return None
        return min(p.deadline for p in self._pending.values())

    def flush(self) -> List[ChangeEvent]:
        """Emit everything pending regardless of deadlines."""
        ordered = sorted(self._pending.items(), key=lambda item: item[1].first_seen)
        self._pending.clear()
        return [ChangeEvent(s, p.kind) for s, p in ordered]

    def _deadline(self, first_seen: float, now: float) -> float:
        return min(now + self._window, first_seen + self._max_delay)
