import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, field_validator


class IncidentPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class IncidentStatus(str, Enum):
    open = "open"
    in_progress = "in_progress"
    resolved = "resolved"
    closed = "closed"


class IncidentBase(BaseModel):
    title: str
    description: Optional[str] = None
    type: Optional[str] = None
    priority: IncidentPriority = IncidentPriority.medium
    images: Optional[List[str]] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("title must not be empty")
        return v.strip()


class IncidentCreate(IncidentBase):
    vehicle_id: Optional[str] = None


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus


class IncidentResponse(IncidentBase):
    id: uuid.UUID
    status: IncidentStatus
    vehicle_id: Optional[str] = None
    reported_by_user_id: Optional[uuid.UUID] = None
    inventory_item_id: Optional[uuid.UUID] = None
    source_location_id: Optional[str] = None
    source_location_type: Optional[str] = None
    material_condition: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
