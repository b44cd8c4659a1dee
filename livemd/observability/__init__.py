"""
Observability & Audit Layer

RESPONSIBILITY: Audit trail, metrics, log output
ALLOWED INPUTS: Records of what other layers did
OUTPUTS: AuditLogEntry lists, metric snapshots

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Block or delay other layer operations
- Make decisions based on recorded data

The audit log is append-only but bounded: a dev server runs for hours
and only the recent history is interesting.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple
from enum import Enum
import hashlib
import itertools
import logging

from ..contracts.base import Error, utc_now
from ..contracts.events import AuditLogEntry, AuditEventType

logger = logging.getLogger(__name__)


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLog:
    """
    Bounded, append-only collector of audit entries.
    """

    def __init__(self, max_entries: int = 1000):
        self._entries: Deque[AuditLogEntry] = deque(maxlen=max_entries)
        self._sequence = itertools.count(1)

    def collect(
        self,
        layer: str,
        action: str,
        event_type: AuditEventType,
        entity_id: Optional[str] = None,
        metadata: Tuple[Tuple[str, str], ...] = ()
    ) -> AuditLogEntry:
        sequence = next(self._sequence)
        timestamp = utc_now()
        entry_hash = hashlib.sha256(
            f"{layer}|{action}|{entity_id}|{sequence}|{timestamp.isoformat()}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_hash}",
            event_type=event_type,
            timestamp=timestamp,
            layer=layer,
            action=action,
            entity_id=entity_id,
            metadata=metadata,
        )
        self._entries.append(entry)
        return entry

    def get_entries(
        self,
        event_type: Optional[AuditEventType] = None,
        layer: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        entries = list(self._entries)
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if layer:
            entries = [e for e in entries if e.layer == layer]
        return entries

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS
# =============================================================================

class MetricType(Enum):
    COUNTER = "counter"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    name: str
    metric_type: MetricType
    description: str


@dataclass
class TimingSummary:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


DEFAULT_METRICS = (
    MetricDefinition("renders_total", MetricType.COUNTER, "Successful renders and asset copies"),
    MetricDefinition("render_failures_total", MetricType.COUNTER, "Renders aborted by RenderIoError"),
    MetricDefinition("removals_total", MetricType.COUNTER, "Artifacts removed after source deletion"),
    MetricDefinition("reloads_published_total", MetricType.COUNTER, "Reload signals published"),
    MetricDefinition("deliveries_failed_total", MetricType.COUNTER, "Subscribers dropped on delivery failure"),
    MetricDefinition("render_duration_ms", MetricType.TIMING, "Read plus render time per source"),
)


class MetricsCollector:
    """Counters and timing summaries, registered up front."""

    def __init__(self):
        self._definitions: Dict[str, MetricDefinition] = {}
        self._counters: Dict[str, int] = {}
        self._timings: Dict[str, TimingSummary] = {}
        for definition in DEFAULT_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        self._definitions[definition.name] = definition
        if definition.metric_type is MetricType.COUNTER:
            self._counters.setdefault(definition.name, 0)
        else:
            self._timings.setdefault(definition.name, TimingSummary())

    def increment(self, name: str, amount: int = 1):
        if name not in self._counters:
            raise KeyError(f"Unknown counter: {name}")
        self._counters[name] += amount

    def record_timing(self, name: str, duration_ms: float):
        summary = self._timings.get(name)
        if summary is None:
            raise KeyError(f"Unknown timing: {name}")
        summary.count += 1
        summary.total_ms += duration_ms
        summary.max_ms = max(summary.max_ms, duration_ms)

    def counter(self, name: str) -> int:
        return self._counters[name]

    def timing(self, name: str) -> TimingSummary:
        return self._timings[name]

    def snapshot(self) -> Dict[str, float]:
        """Flat view for status output."""
        result: Dict[str, float] = dict(self._counters)
        for name, summary in self._timings.items():
            result[f"{name}_count"] = summary.count
            result[f"{name}_mean"] = round(summary.mean_ms, 3)
            result[f"{name}_max"] = round(summary.max_ms, 3)
        return result


# =============================================================================
# FACADE
# =============================================================================

@dataclass
class ObservabilityConfig:
    max_audit_entries: int = 1000


@dataclass
class Observability:
    """
    What the other layers talk to. Every audit record is also written
    to the module logger so the console shows the same story.
    """
    config: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    audit_log: AuditLog = None
    metrics: MetricsCollector = None

    def __post_init__(self):
        self.audit_log = self.audit_log or AuditLog(self.config.max_audit_entries)
        self.metrics = self.metrics or MetricsCollector()

    def record(
        self,
        layer: str,
        action: str,
        event_type: AuditEventType,
        entity_id: Optional[str] = None,
        **metadata: str
    ) -> AuditLogEntry:
        pairs = tuple((k, str(v)) for k, v in sorted(metadata.items()))
        entry = self.audit_log.collect(layer, action, event_type, entity_id, pairs)
        level = logging.WARNING if event_type is AuditEventType.FAILURE else logging.DEBUG
        logger.log(level, "[%s] %s %s %s", layer, action, entity_id or "-", dict(pairs) if pairs else "")
        return entry

    def record_error(self, layer: str, error: Error, entity_id: Optional[str] = None) -> AuditLogEntry:
        return self.record(
            layer,
            error.code.name.lower(),
            AuditEventType.FAILURE,
            entity_id,
            message=error.message,
            **dict(error.context),
        )
