import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..services.inventory_locations import LocationType
from ..services.material_status import MaterialCondition
from .incidents import IncidentBase


class LocationStackSchema(BaseModel):
    type: LocationType
    id: str
    quantity: int = Field(ge=1)
    # Legacy values (new, ok, broken) are accepted and normalized by the service
    status: Optional[str] = None


class MaterialConditionOption(BaseModel):
    value: MaterialCondition
    label: str
    driver_selectable: bool


class InventoryItemResponse(BaseModel):
    id: uuid.UUID
    name: str
    sku: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    quantity: int
    locations: List[dict] = []
    assigned_quantity: int
    unassigned_quantity: int
    updated_at: Optional[datetime] = None


class LocationsUpdate(BaseModel):
    locations: List[LocationStackSchema]


class MaterialIncidentCreate(IncidentBase):
    location_id: str
    condition: MaterialCondition = MaterialCondition.totally_broken


class RestoreRequest(BaseModel):
    item_id: uuid.UUID
    target_id: str
    target_type: LocationType


class StatusAuditItem(BaseModel):
    id: uuid.UUID
    name: str
    locations: List[dict] = []


class StatusMigrationResponse(BaseModel):
    items: int
    dry_run: bool
