from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class NotificationInfo(BaseModel):
    id: int
    type: str
    title: str
    message: str
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UnreadCount(BaseModel):
    count: int
