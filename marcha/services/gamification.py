"""
Points ledger service.

point_logs is the append-only source of truth; users.points is a denormalized
running total kept for fast reads. Both are written in the same transaction.
Rows written before that was the case may have drifted, which the backfill
functions detect and repair by appending a corrective entry.
"""
import uuid
from typing import Dict, Optional, Union

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..models.models import PointLog, SystemSetting, User
from ..time_utils import utcnow


logger = structlog.get_logger(__name__)

GAMIFICATION_SETTING_KEY = "gamification"

BACKFILL_REASON = "legacy_migration_2024_force"
MANUAL_FIX_REASON = "legacy_migration_manual_fix"

DEFAULT_ACTION_POINTS: Dict[str, int] = {
    "checklist_completed": 10,
    "log_km": 5,
    "log_fuel": 5,
    "incident_reported": 25,
    "wash_exterior": 10,
    "wash_interior": 10,
    "wash_complete": 20,
    "tire_pressure_log": 5,
    "game_time_1min": 1,
    "vehicle_wash": 15,  # legacy, before wash types were split
}

UserId = Union[uuid.UUID, str]


class UserNotFound(Exception):
    pass


def _as_uuid(value: UserId) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def log_points(db: Session, user_id: UserId, points: int, reason: str) -> PointLog:
    """
    Append a ledger entry and increment the user's running total.

    The increment is a single UPDATE (points = coalesce(points, 0) + n), so
    concurrent awards for the same user do not lose updates. Raises
    UserNotFound when the user row does not exist.
    """
    uid = _as_uuid(user_id)
    result = db.execute(
        update(User)
        .where(User.id == uid)
        .values(points=func.coalesce(User.points, 0) + points)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise UserNotFound(f"User {uid} not found")

    entry = PointLog(user_id=uid, points=points, reason=reason, created_at=utcnow())
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("points_logged", user_id=str(uid), points=points, reason=reason)
    return entry


def _default_config() -> dict:
    return {"actions": dict(DEFAULT_ACTION_POINTS), "updated_at": None, "updated_by": None}


def get_gamification_config(db: Session) -> dict:
    """
    Return {actions, updated_at, updated_by}, seeding the singleton on first use.

    Keys missing from the stored document are filled from the defaults. Any
    failure falls back to the defaults; config problems never reach callers.
    """
    try:
        row = db.query(SystemSetting).filter(SystemSetting.key == GAMIFICATION_SETTING_KEY).first()
        if row is None:
            row = SystemSetting(
                key=GAMIFICATION_SETTING_KEY,
                value={"actions": dict(DEFAULT_ACTION_POINTS)},
                updated_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info("gamification_config_seeded")

        actions = dict(DEFAULT_ACTION_POINTS)
        actions.update((row.value or {}).get("actions") or {})
        return {"actions": actions, "updated_at": row.updated_at, "updated_by": row.updated_by}
    except Exception as e:
        db.rollback()
        logger.warning("gamification_config_fallback", error=str(e))
        return _default_config()


def update_gamification_config(db: Session, actions: Dict[str, int], updated_by: Optional[UserId] = None) -> dict:
    for key, value in actions.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"Points for '{key}' must be a non-negative integer")

    row = db.query(SystemSetting).filter(SystemSetting.key == GAMIFICATION_SETTING_KEY).first()
    if row is None:
        row = SystemSetting(key=GAMIFICATION_SETTING_KEY)
        db.add(row)
    merged = dict(DEFAULT_ACTION_POINTS)
    merged.update((row.value or {}).get("actions") or {})
    merged.update(actions)
    row.value = {"actions": merged}
    row.updated_at = utcnow()
    row.updated_by = _as_uuid(updated_by) if updated_by else None
    db.commit()
    db.refresh(row)
    logger.info("gamification_config_updated", updated_by=str(updated_by) if updated_by else None)
    return {"actions": merged, "updated_at": row.updated_at, "updated_by": row.updated_by}


def award_points_for_action(
    db: Session,
    user_id: UserId,
    action_key: str,
    custom_reason: Optional[str] = None,
) -> int:
    """
    Award the configured points for an action and return how many were given.

    Never raises: the primary action (fuel log, checklist...) must succeed even
    when points cannot be awarded.
    """
    config = get_gamification_config(db)
    points = config["actions"].get(action_key, DEFAULT_ACTION_POINTS.get(action_key, 0)) or 0
    if points == 0:
        return 0

    try:
        log_points(db, user_id, points, custom_reason or action_key)
    except Exception as e:
        db.rollback()
        logger.error("points_award_failed", user_id=str(user_id), action=action_key, error=str(e))
        return 0
    return points


def sum_logged_points(db: Session, user_id: UserId) -> int:
    total = (
        db.query(func.coalesce(func.sum(PointLog.points), 0))
        .filter(PointLog.user_id == _as_uuid(user_id))
        .scalar()
    )
    return int(total or 0)


def _find_user_by_email(db: Session, email: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise UserNotFound(f"User with email {email} not found")
    return user


def backfill_points(db: Session) -> dict:
    """
    Reconcile every user's running total against the ledger.

    A user whose total exceeds the logged sum gets one corrective entry for the
    difference. Totals are never lowered and entries are never removed. A
    failing user is rolled back and counted; the batch carries on.
    """
    logger.info("backfill_started")
    candidates = [
        (user_id, points)
        for user_id, points in db.query(User.id, User.points).filter(User.points != 0).all()
    ]

    updated_count = 0
    errors_count = 0
    for user_id, current_total in candidates:
        try:
            diff = (current_total or 0) - sum_logged_points(db, user_id)
            if diff > 0:
                db.add(PointLog(user_id=user_id, points=diff, reason=BACKFILL_REASON, created_at=utcnow()))
                db.commit()
                logger.info("backfill_user_corrected", user_id=str(user_id), diff=diff)
                updated_count += 1
        except Exception as e:
            db.rollback()
            logger.error("backfill_user_failed", user_id=str(user_id), error=str(e))
            errors_count += 1

    logger.info("backfill_complete", updated_count=updated_count, errors_count=errors_count)
    return {"updated_count": updated_count, "errors_count": errors_count}


def force_backfill_user(db: Session, email: str) -> dict:
    user = _find_user_by_email(db, email)
    diff = (user.points or 0) - sum_logged_points(db, user.id)
    if diff > 0:
        db.add(PointLog(user_id=user.id, points=diff, reason=MANUAL_FIX_REASON, created_at=utcnow()))
        db.commit()
        logger.info("backfill_user_corrected", user_id=str(user.id), diff=diff, manual=True)
        return {"success": True, "diff": diff}
    return {"success": False, "diff": diff, "message": "No point difference to fix"}


def debug_user_gamification(db: Session, email: str, sample_size: int = 5) -> dict:
    """Read-only drift report for one user, with the most recent ledger entries."""
    user = _find_user_by_email(db, email)
    logged_total = sum_logged_points(db, user.id)
    logs_count = db.query(func.count(PointLog.id)).filter(PointLog.user_id == user.id).scalar() or 0
    recent = (
        db.query(PointLog)
        .filter(PointLog.user_id == user.id)
        .order_by(PointLog.created_at.desc())
        .limit(sample_size)
        .all()
    )
    return {
        "user": {
            "id": str(user.id),
            "email": user.email,
            "name": user.full_name,
            "role": user.role,
            "points": user.points or 0,
        },
        "points_mismatch": (user.points or 0) - logged_total,
        "logged_total": logged_total,
        "logs_count": int(logs_count),
        "logs_sample": [
            {"id": str(log.id), "points": log.points, "reason": log.reason, "created_at": log.created_at}
            for log in recent
        ],
    }
