"""
API Mapper
==========

Transforms internal state into wire formats: SSE frames for the reload
stream and DTOs for the status endpoint.
"""
import json
from typing import List

from ..contracts.events import ReloadSignal, AuditLogEntry
from ..engine import LiveServer
from .schemas import StatusResponse, SourceStatusDTO, AuditEntryDTO


RELOAD_EVENT = "reload"
RECENT_AUDIT_ENTRIES = 20


def _iso(value) -> str:
    return value.isoformat().replace("+00:00", "Z")


def format_reload_event(signal: ReloadSignal) -> str:
    """One Server-Sent Events frame for a ReloadSignal."""
    payload = {
        "path": signal.path.value if signal.path else None,
        "issued_at": _iso(signal.issued_at),
    }
    return f"event: {RELOAD_EVENT}\ndata: {json.dumps(payload)}\n\n"


def _map_audit_entry(entry: AuditLogEntry) -> AuditEntryDTO:
    return AuditEntryDTO(
        timestamp=_iso(entry.timestamp),
        layer=entry.layer,
        action=entry.action,
        entity_id=entry.entity_id,
        metadata=dict(entry.metadata),
    )


def map_status_to_dto(server: LiveServer) -> StatusResponse:
    sources: List[SourceStatusDTO] = []
    coordinator = server.coordinator
    for source in sorted(coordinator.states()):
        status = coordinator.status_of(source)
        if status is None:
            continue
        sources.append(SourceStatusDTO(
            source=source.value,
            state=status.state.value,
            last_error=status.last_error.message if status.last_error else None,
        ))

    entries = server.observability.audit_log.get_entries()
    return StatusResponse(
        content_root=str(server.content_root),
        artifacts=len(server.store),
        subscribers=server.broadcaster.subscriber_count,
        sources=sources,
        metrics=server.observability.metrics.snapshot(),
        recent=[_map_audit_entry(e) for e in entries[-RECENT_AUDIT_ENTRIES:]],
    )
