"""
Notification Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any
from backend.app.models.notification import NotificationKind, DeliveryStatus


class NotificationResponse(BaseModel):
    id: int
    kind: NotificationKind
    payload: Optional[Dict[str, Any]]
    status: DeliveryStatus
    is_read: bool
    created_at: datetime
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReadAllResponse(BaseModel):
    updated: int
