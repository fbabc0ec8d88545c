import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_roles
from ..models.models import User
from ..schemas.incidents import IncidentCreate, IncidentResponse, IncidentStatusUpdate
from ..services.gamification import award_points_for_action
from ..services.incidents import (
    IncidentNotFound,
    InvalidStatusTransition,
    create_incident,
    update_incident_status,
)


router = APIRouter(prefix="/incidents", tags=["incidents"])


@router.post("", response_model=IncidentResponse)
def report(payload: IncidentCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    incident = create_incident(db, payload, user.id)
    award_points_for_action(db, user.id, "incident_reported")
    return incident


@router.patch("/{incident_id}/status", response_model=IncidentResponse)
def change_status(
    incident_id: uuid.UUID,
    payload: IncidentStatusUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_roles("manager")),
):
    try:
        return update_incident_status(db, incident_id, payload.status)
    except IncidentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
