from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_roles
from ..models.models import User
from ..schemas.gamification import (
    AwardRequest,
    AwardResponse,
    BackfillResponse,
    BackfillUserRequest,
    BackfillUserResponse,
    DebugUserResponse,
    GamificationConfigResponse,
    GamificationConfigUpdate,
    RankInfoResponse,
    RankProgressResponse,
    RankingEntry,
    UserSummary,
)
from ..services import gamification as gamification_service
from ..services.gamification import UserNotFound
from ..services.ranking import RankingPeriod, get_ranking
from ..services.ranks import RANKS, get_next_rank_progress, get_user_rank


router = APIRouter(prefix="/gamification", tags=["gamification"])


def _rank_response(rank) -> RankInfoResponse:
    return RankInfoResponse.model_validate(rank)


# ---------- RANKS & RANKING ----------
@router.get("/ranks", response_model=List[RankInfoResponse])
def list_ranks():
    return [_rank_response(rank) for rank in RANKS]


@router.get("/me/rank", response_model=RankProgressResponse)
def my_rank(user: User = Depends(get_current_user)):
    points = user.points or 0
    progress = get_next_rank_progress(points)
    next_rank = progress["next_rank"]
    return RankProgressResponse(
        points=points,
        rank=_rank_response(get_user_rank(points)),
        progress=progress["progress"],
        next_rank=_rank_response(next_rank) if next_rank else None,
        points_to_next=progress["points_to_next"],
    )


@router.get("/ranking", response_model=List[RankingEntry])
def ranking(
    period: RankingPeriod = Query(RankingPeriod.all),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return [
        RankingEntry(
            user_id=entry.user_id,
            points=entry.points,
            rank=_rank_response(get_user_rank(entry.points)),
            user=UserSummary.model_validate(entry.user) if entry.user else None,
        )
        for entry in get_ranking(db, period)
    ]


# ---------- AWARDS ----------
@router.post("/award", response_model=AwardResponse)
def award(payload: AwardRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Award the current user the configured points for a completed action"""
    points = gamification_service.award_points_for_action(
        db, user.id, payload.action_key, payload.custom_reason
    )
    return AwardResponse(action_key=payload.action_key, points_awarded=points)


# ---------- CONFIG ----------
@router.get("/config", response_model=GamificationConfigResponse)
def get_config(db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    return gamification_service.get_gamification_config(db)


@router.put("/config", response_model=GamificationConfigResponse)
def update_config(
    payload: GamificationConfigUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    try:
        return gamification_service.update_gamification_config(db, payload.actions, user.id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------- RECONCILIATION ----------
@router.post("/backfill", response_model=BackfillResponse)
def backfill(db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    return gamification_service.backfill_points(db)


@router.post("/backfill/user", response_model=BackfillUserResponse)
def backfill_user(payload: BackfillUserRequest, db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    try:
        return gamification_service.force_backfill_user(db, payload.email)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/debug", response_model=DebugUserResponse)
def debug_user(email: str = Query(...), db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    try:
        return gamification_service.debug_user_gamification(db, email)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
