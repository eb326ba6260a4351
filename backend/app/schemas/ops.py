"""
Operations Schemas (notification retry, dead letters).
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, Optional

from backend.app.models.dlq import DLQStatus


class RetryResponse(BaseModel):
    retried: int


class DLQEntryResponse(BaseModel):
    id: int
    task_name: str
    error_message: Optional[str]
    payload: Optional[Dict[str, Any]]
    status: DLQStatus
    created_at: datetime

    class Config:
        from_attributes = True


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: Optional[int]
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True
