import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_roles
from ..models.models import InventoryItem, User
from ..schemas.incidents import IncidentResponse
from ..schemas.inventory import (
    InventoryItemResponse,
    LocationsUpdate,
    MaterialConditionOption,
    MaterialIncidentCreate,
    RestoreRequest,
    StatusAuditItem,
    StatusMigrationResponse,
)
from ..services import inventory_locations as locations_service
from ..services.concurrency import TransactionConflict
from ..services.gamification import award_points_for_action
from ..services.incidents import IncidentNotFound
from ..services.material_status import DRIVER_CONDITIONS, MaterialCondition, label_for
from ..services.inventory_locations import (
    IncidentNotRestorable,
    InvalidLocations,
    ItemNotFound,
    ItemNotFoundAtLocation,
    NoUnitAtSource,
)


router = APIRouter(prefix="/inventory", tags=["inventory"])


def _item_response(item: InventoryItem) -> InventoryItemResponse:
    stacks = locations_service.load_stacks(item)
    assigned = locations_service.total_quantity(stacks)
    return InventoryItemResponse(
        id=item.id,
        name=item.name,
        sku=item.sku,
        category=item.category,
        brand=item.brand,
        model=item.model,
        quantity=item.quantity or 0,
        locations=[stack.to_dict() for stack in stacks],
        assigned_quantity=assigned,
        unassigned_quantity=locations_service.unassigned_quantity(item),
        updated_at=item.updated_at,
    )


def _raise_http(e: Exception):
    if isinstance(e, (ItemNotFound, ItemNotFoundAtLocation, NoUnitAtSource, IncidentNotFound)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, TransactionConflict):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


# ---------- CONDITIONS ----------
@router.get("/conditions", response_model=List[MaterialConditionOption])
def list_conditions(_=Depends(get_current_user)):
    return [
        MaterialConditionOption(value=c, label=label_for(c), driver_selectable=c in DRIVER_CONDITIONS)
        for c in MaterialCondition
    ]


# ---------- ITEMS ----------
@router.get("/items/{item_id}", response_model=InventoryItemResponse)
def get_item(item_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    item = db.query(InventoryItem).filter(InventoryItem.id == item_id).first()
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return _item_response(item)


@router.put("/items/{item_id}/locations", response_model=InventoryItemResponse)
def update_locations(
    item_id: uuid.UUID,
    payload: LocationsUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_roles("admin")),
):
    try:
        item = locations_service.set_item_locations(
            db, item_id, [loc.model_dump(mode="json") for loc in payload.locations]
        )
    except (InvalidLocations, ItemNotFound, TransactionConflict, ValueError) as e:
        _raise_http(e)
    return _item_response(item)


@router.post("/items/{item_id}/stacks/{index}/broken", response_model=InventoryItemResponse)
def mark_broken(item_id: uuid.UUID, index: int, db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    try:
        item = locations_service.mark_stack_broken(db, item_id, index)
    except (InvalidLocations, ItemNotFound, NoUnitAtSource, TransactionConflict) as e:
        _raise_http(e)
    return _item_response(item)


# ---------- MATERIAL INCIDENTS ----------
@router.post("/items/{item_id}/incidents", response_model=IncidentResponse)
def report_incident(
    item_id: uuid.UUID,
    payload: MaterialIncidentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = payload.model_dump(mode="json", exclude={"location_id", "condition"})
    data["reported_by_user_id"] = str(user.id)
    try:
        incident = locations_service.report_material_incident(
            db, data, item_id, payload.location_id, payload.condition
        )
    except (ItemNotFound, ItemNotFoundAtLocation, TransactionConflict, ValueError) as e:
        _raise_http(e)
    # Reporting succeeded; awarding points is best effort
    award_points_for_action(db, user.id, "incident_reported")
    return incident


@router.post("/incidents/{incident_id}/restore", response_model=IncidentResponse)
def restore(
    incident_id: uuid.UUID,
    payload: RestoreRequest,
    db: Session = Depends(get_db),
    _=Depends(require_roles("admin")),
):
    try:
        return locations_service.restore_material(
            db, incident_id, payload.item_id, payload.target_id, payload.target_type
        )
    except (
        IncidentNotFound,
        IncidentNotRestorable,
        ItemNotFound,
        NoUnitAtSource,
        TransactionConflict,
    ) as e:
        _raise_http(e)


# ---------- STATUS AUDIT ----------
@router.get("/status-audit", response_model=List[StatusAuditItem])
def status_audit(db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    return [
        StatusAuditItem(id=item.id, name=item.name, locations=item.locations or [])
        for item in locations_service.items_needing_status_audit(db)
    ]


@router.post("/status-audit/migrate", response_model=StatusMigrationResponse)
def migrate_statuses(
    dry_run: bool = Query(False),
    db: Session = Depends(get_db),
    _=Depends(require_roles("admin")),
):
    try:
        count = locations_service.migrate_legacy_statuses(db, dry_run=dry_run)
    except TransactionConflict as e:
        _raise_http(e)
    return StatusMigrationResponse(items=count, dry_run=dry_run)
