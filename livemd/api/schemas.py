"""
Response models for the JSON endpoints.

Artifacts themselves are served as raw bytes and have no schema.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    running: bool
    failed: bool


class SourceStatusDTO(BaseModel):
    source: str
    state: str
    last_error: Optional[str] = None


class AuditEntryDTO(BaseModel):
    timestamp: str
    layer: str
    action: str
    entity_id: Optional[str] = None
    metadata: Dict[str, str] = {}


class StatusResponse(BaseModel):
    content_root: str
    artifacts: int
    subscribers: int
    sources: List[SourceStatusDTO]
    metrics: Dict[str, float]
    recent: List[AuditEntryDTO]
