import uuid
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..models.models import Incident
from ..schemas.incidents import IncidentCreate, IncidentStatus
from ..time_utils import utcnow


logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    IncidentStatus.open: {IncidentStatus.in_progress, IncidentStatus.resolved, IncidentStatus.closed},
    IncidentStatus.in_progress: {IncidentStatus.resolved, IncidentStatus.closed},
    IncidentStatus.resolved: {IncidentStatus.closed},
    IncidentStatus.closed: set(),
}


class IncidentNotFound(Exception):
    pass


class InvalidStatusTransition(Exception):
    pass


def get_incident(db: Session, incident_id: Union[uuid.UUID, str]) -> Incident:
    iid = incident_id if isinstance(incident_id, uuid.UUID) else uuid.UUID(str(incident_id))
    incident = db.query(Incident).filter(Incident.id == iid).populate_existing().first()
    if incident is None:
        raise IncidentNotFound(f"Incident {iid} not found")
    return incident


def create_incident(db: Session, data: IncidentCreate, reported_by_user_id: Optional[uuid.UUID]) -> Incident:
    """Plain vehicle incident reported by a driver, not tied to inventory stock."""
    now = utcnow()
    incident = Incident(
        title=data.title,
        description=data.description or "",
        type=data.type,
        priority=data.priority.value,
        status=IncidentStatus.open.value,
        vehicle_id=data.vehicle_id,
        reported_by_user_id=reported_by_user_id,
        images=data.images or [],
        created_at=now,
        updated_at=now,
    )
    db.add(incident)
    db.commit()
    db.refresh(incident)
    logger.info("incident_created", incident_id=str(incident.id), vehicle_id=data.vehicle_id)
    return incident


def update_incident_status(db: Session, incident_id: Union[uuid.UUID, str], status: IncidentStatus) -> Incident:
    incident = get_incident(db, incident_id)
    current = IncidentStatus(incident.status or IncidentStatus.open.value)
    status = IncidentStatus(status)
    if status == current:
        return incident
    if status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(f"Cannot move incident from {current.value} to {status.value}")

    incident.status = status.value
    incident.updated_at = utcnow()
    db.commit()
    db.refresh(incident)
    logger.info("incident_status_changed", incident_id=str(incident.id), status=status.value)
    return incident
