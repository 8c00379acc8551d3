from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from projecthub.models.enums import NotificationType


class NotificationRead(BaseModel):
    id: int
    recipient_id: int
    type: NotificationType
    title: str
    message: str
    task_id: Optional[int] = None
    submission_id: Optional[int] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCount(BaseModel):
    unread: int
