"""
Inventory stock spread over locations, and the incident transactions that move it.

An item's `locations` column holds stacks of {type, id, quantity, status}. A
warehouse or vehicle can hold several stacks of the same item when their
statuses differ (10 working units and 1 broken unit in warehouse A).

Invariants:
- The sum of stack quantities is only changed by manual admin edits. Reporting
  and restoring move exactly one unit and conserve the total.
- A stack whose quantity reaches 0 is removed.
- Restores merge into an existing (type, id, status) stack before creating one.
- Each operation is a single read-modify-write committed once; a concurrent
  write to the same item fails the version check and the operation is re-run
  from a fresh read (see concurrency.run_with_retry).
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Incident, InventoryItem
from ..schemas.incidents import IncidentStatus
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .incidents import get_incident
from .material_status import (
    MaterialCondition,
    RESTORABLE_CONDITIONS,
    health_rank,
    is_healthy,
    is_legacy_status,
    normalize_condition,
)


logger = structlog.get_logger(__name__)

ItemId = Union[uuid.UUID, str]


class LocationType(str, Enum):
    warehouse = "warehouse"
    vehicle = "vehicle"


class InventoryTransactionError(Exception):
    pass


class ItemNotFound(InventoryTransactionError):
    pass


class ItemNotFoundAtLocation(InventoryTransactionError):
    pass


class NoUnitAtSource(InventoryTransactionError):
    pass


class NoRestorableUnitFound(NoUnitAtSource):
    pass


class IncidentNotRestorable(InventoryTransactionError):
    pass


class InvalidLocations(InventoryTransactionError):
    pass


@dataclass
class LocationStack:
    type: str
    id: str
    quantity: int
    status: Optional[MaterialCondition] = None

    @classmethod
    def from_dict(cls, data: dict) -> "LocationStack":
        return cls(
            type=data.get("type"),
            id=str(data["id"]) if data.get("id") is not None else "",
            quantity=int(data.get("quantity") or 0),
            status=normalize_condition(data.get("status")),
        )

    def to_dict(self) -> dict:
        out = {"type": self.type, "id": self.id, "quantity": self.quantity}
        if self.status is not None:
            out["status"] = self.status.value
        return out

    def same_slot(self, type_: str, id_: str, status: Optional[MaterialCondition]) -> bool:
        return self.type == type_ and self.id == id_ and self.status == status


def _as_uuid(value: ItemId) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def load_stacks(item: InventoryItem) -> List[LocationStack]:
    return [LocationStack.from_dict(loc) for loc in (item.locations or [])]


def total_quantity(stacks: Iterable[LocationStack]) -> int:
    return sum(stack.quantity for stack in stacks)


def unassigned_quantity(item: InventoryItem) -> int:
    return (item.quantity or 0) - total_quantity(load_stacks(item))


def _store_stacks(item: InventoryItem, stacks: List[LocationStack]) -> None:
    # Assign a new list so the JSON column is flagged dirty
    item.locations = [stack.to_dict() for stack in stacks if stack.quantity > 0]
    item.updated_at = utcnow()


def _get_item(db: Session, item_id: ItemId) -> InventoryItem:
    # populate_existing: every retry must see the row as currently committed
    item = (
        db.query(InventoryItem)
        .filter(InventoryItem.id == _as_uuid(item_id))
        .populate_existing()
        .first()
    )
    if item is None:
        raise ItemNotFound(f"Item {item_id} not found")
    return item


def _find_incident_source(stacks: List[LocationStack], location_id: str) -> Optional[int]:
    at_location = [i for i, stack in enumerate(stacks) if stack.id == location_id]
    healthy = [i for i in at_location if is_healthy(stacks[i].status)]
    if healthy:
        return min(healthy, key=lambda i: (health_rank(stacks[i].status), i))
    for i in at_location:
        if stacks[i].status != MaterialCondition.ordered:
            return i
    return None


def _split_unit(stacks: List[LocationStack], index: int, condition: MaterialCondition) -> None:
    """
    One unit of stacks[index] takes `condition`.

    The unit joins an existing stack of that condition at the same location if
    there is one, otherwise it is split off (or the stack flips in place when
    it holds a single unit). A unit already in `condition` stays where it is.
    """
    stack = stacks[index]
    if stack.status == condition:
        return
    target = next(
        (s for s in stacks if s is not stack and s.same_slot(stack.type, stack.id, condition)),
        None,
    )
    if target is not None:
        target.quantity += 1
        stack.quantity -= 1
        if stack.quantity <= 0:
            stacks.pop(index)
    elif stack.quantity > 1:
        stack.quantity -= 1
        stacks.append(LocationStack(type=stack.type, id=stack.id, quantity=1, status=condition))
    else:
        stack.status = condition


def _find_restore_source(
    stacks: List[LocationStack],
    source_location_id: Optional[str],
    reported_condition: Optional[MaterialCondition],
) -> Optional[int]:
    restorable = [i for i, stack in enumerate(stacks) if stack.status in RESTORABLE_CONDITIONS]
    if source_location_id:
        at_source = [i for i in restorable if stacks[i].id == source_location_id]
        for i in at_source:
            if reported_condition is not None and stacks[i].status == reported_condition:
                return i
        if at_source:
            return at_source[0]
    if restorable:
        return restorable[0]
    for i, stack in enumerate(stacks):
        if stack.id == settings.repair_pool_location_id:
            return i
    return None


def _add_unit(stacks: List[LocationStack], type_: str, id_: str, status: MaterialCondition) -> None:
    for stack in stacks:
        if stack.same_slot(type_, id_, status):
            stack.quantity += 1
            return
    stacks.append(LocationStack(type=type_, id=id_, quantity=1, status=status))


def report_material_incident(
    db: Session,
    incident_data: dict,
    item_id: ItemId,
    location_id: str,
    condition: Union[MaterialCondition, str],
) -> Incident:
    """
    Take one unit at `location_id` out of service and open an incident for it.

    A healthy stack is preferred, the most usable one first; failing that any
    stack at the location that is not merely ordered. The unit joins a stack
    already in `condition` at that location, or is split off into a new one;
    a single-unit stack changes status in place. A unit already in
    `condition` stays put and only the incident is opened.
    """
    condition = normalize_condition(condition)
    if condition is None:
        raise ValueError("condition is required")
    location_id = str(location_id)
    reporter = incident_data.get("reported_by_user_id")

    def _op() -> Incident:
        item = _get_item(db, item_id)
        stacks = load_stacks(item)
        index = _find_incident_source(stacks, location_id)
        if index is None:
            raise ItemNotFoundAtLocation(f"Item {item.id} has no usable stock at {location_id}")

        source_type, source_id = stacks[index].type, stacks[index].id
        _split_unit(stacks, index, condition)
        _store_stacks(item, stacks)

        now = utcnow()
        incident = Incident(
            title=incident_data.get("title") or item.name,
            description=incident_data.get("description") or "",
            type=incident_data.get("type") or "material",
            priority=incident_data.get("priority") or "medium",
            status=IncidentStatus.open.value,
            # Kept for screens that only know vehicle incidents
            vehicle_id=source_id if source_type == LocationType.vehicle.value else None,
            reported_by_user_id=_as_uuid(reporter) if reporter else None,
            inventory_item_id=item.id,
            source_location_id=source_id,
            source_location_type=source_type,
            material_condition=condition.value,
            images=incident_data.get("images") or [],
            created_at=now,
            updated_at=now,
        )
        db.add(incident)
        db.commit()
        db.refresh(incident)
        return incident

    incident = run_with_retry(db, _op)
    logger.info(
        "material_incident_reported",
        incident_id=str(incident.id),
        item_id=str(item_id),
        location_id=location_id,
        condition=condition.value,
    )
    return incident


def restore_material(
    db: Session,
    incident_id: ItemId,
    item_id: ItemId,
    target_id: str,
    target_type: Union[LocationType, str],
) -> Incident:
    """
    Return a repaired unit to service at (target_type, target_id) and resolve the incident.

    The unit is taken from a broken, urgent or ordered stack, preferring the
    incident's source location and reported condition, then from the repair
    pool pseudo location. Nothing else is ever consumed: with no such stack
    NoRestorableUnitFound is raised.
    """
    target_type = LocationType(target_type).value
    target_id = str(target_id)

    def _op() -> Incident:
        incident = get_incident(db, incident_id)
        if incident.status in (IncidentStatus.resolved.value, IncidentStatus.closed.value):
            raise IncidentNotRestorable(f"Incident {incident.id} is already {incident.status}")
        item = _get_item(db, item_id)
        if incident.inventory_item_id is not None and incident.inventory_item_id != item.id:
            raise IncidentNotRestorable(f"Incident {incident.id} does not concern item {item.id}")

        stacks = load_stacks(item)
        index = _find_restore_source(
            stacks,
            incident.source_location_id,
            normalize_condition(incident.material_condition),
        )
        if index is None:
            raise NoRestorableUnitFound(f"Item {item.id} has no unit awaiting repair")

        stacks[index].quantity -= 1
        if stacks[index].quantity <= 0:
            stacks.pop(index)
        _add_unit(stacks, target_type, target_id, MaterialCondition.new_functional)
        _store_stacks(item, stacks)

        incident.status = IncidentStatus.resolved.value
        incident.updated_at = utcnow()
        db.commit()
        db.refresh(incident)
        return incident

    incident = run_with_retry(db, _op)
    logger.info(
        "material_restored",
        incident_id=str(incident.id),
        item_id=str(item_id),
        target_type=target_type,
        target_id=target_id,
    )
    return incident


def mark_stack_broken(db: Session, item_id: ItemId, index: int) -> InventoryItem:
    """Admin shortcut: one unit of the stack at `index` becomes totally broken, no incident."""

    def _op() -> InventoryItem:
        item = _get_item(db, item_id)
        stacks = load_stacks(item)
        if index < 0 or index >= len(stacks):
            raise NoUnitAtSource(f"Item {item.id} has no stack #{index}")
        if stacks[index].status == MaterialCondition.totally_broken:
            raise InvalidLocations(f"Stack #{index} of item {item.id} is already totally broken")
        _split_unit(stacks, index, MaterialCondition.totally_broken)
        _store_stacks(item, stacks)
        db.commit()
        db.refresh(item)
        return item

    return run_with_retry(db, _op)


def _parse_locations(locations: Iterable[dict]) -> List[LocationStack]:
    stacks = []
    for raw in locations:
        try:
            stack = LocationStack.from_dict(raw)
        except (TypeError, ValueError) as e:
            raise InvalidLocations(str(e)) from e
        if stack.type not in {t.value for t in LocationType}:
            raise InvalidLocations(f"Unknown location type: {stack.type!r}")
        if not stack.id:
            raise InvalidLocations("Location id is required")
        if stack.quantity < 1:
            raise InvalidLocations("Stack quantity must be at least 1")
        if any(s.same_slot(stack.type, stack.id, stack.status) for s in stacks):
            raise InvalidLocations(f"Duplicate stack for {stack.type} {stack.id}")
        stacks.append(stack)
    return stacks


def set_item_locations(db: Session, item_id: ItemId, locations: Iterable[dict]) -> InventoryItem:
    """Replace an item's stacks (admin edit). Assigned stock may not exceed the item quantity."""
    stacks = _parse_locations(locations)

    def _op() -> InventoryItem:
        item = _get_item(db, item_id)
        assigned = total_quantity(stacks)
        if assigned > (item.quantity or 0):
            raise InvalidLocations(
                f"Cannot assign {assigned} units, item {item.id} only has {item.quantity or 0}"
            )
        _store_stacks(item, stacks)
        db.commit()
        db.refresh(item)
        return item

    item = run_with_retry(db, _op)
    logger.info("item_locations_updated", item_id=str(item.id), stacks=len(stacks))
    return item


def items_needing_status_audit(db: Session) -> List[InventoryItem]:
    """Items with at least one stack whose stored status is unset or legacy."""
    items = db.query(InventoryItem).all()
    return [
        item for item in items
        if any(is_legacy_status(loc.get("status")) for loc in (item.locations or []))
    ]


def migrate_legacy_statuses(db: Session, dry_run: bool = False) -> int:
    """
    Rewrite unset/new/ok stacks to new_functional and broken to totally_broken.

    Returns the number of items that need (or received) the rewrite.
    """

    def _op() -> int:
        items = items_needing_status_audit(db)
        if dry_run:
            return len(items)
        for item in items:
            stacks = load_stacks(item)
            for stack in stacks:
                if stack.status is None:
                    stack.status = MaterialCondition.new_functional
            _store_stacks(item, stacks)
        db.commit()
        return len(items)

    count = run_with_retry(db, _op)
    logger.info("legacy_statuses_migrated", items=count, dry_run=dry_run)
    return count
