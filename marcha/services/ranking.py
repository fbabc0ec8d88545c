"""
Leaderboards over the points ledger.

'all' reads the denormalized user totals directly. Week, month and year sum
ledger entries since the start of the window, in the configured local time
zone. Administrators never appear in a ranking. Equal totals are ordered by
user id so that the order is stable between requests.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import List, Optional

import pytz
import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import PointLog, User
from ..time_utils import to_utc_naive


logger = structlog.get_logger(__name__)


class RankingPeriod(str, Enum):
    week = "week"
    month = "month"
    year = "year"
    all = "all"


@dataclass
class RankingUser:
    user_id: str
    points: int
    user: Optional[User] = None


def get_period_start(
    period: RankingPeriod,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    """Local midnight opening the window, as naive UTC. None for 'all'."""
    period = RankingPeriod(period)
    if period == RankingPeriod.all:
        return None

    tz = tz or pytz.timezone(settings.tz_default)
    now = now or datetime.now(pytz.UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=pytz.UTC)
    local_now = now.astimezone(tz).replace(tzinfo=None)
    midnight = dict(hour=0, minute=0, second=0, microsecond=0)

    if period == RankingPeriod.week:
        start = (local_now - timedelta(days=local_now.weekday())).replace(**midnight)  # Monday
    elif period == RankingPeriod.month:
        start = local_now.replace(day=1, **midnight)
    else:
        start = local_now.replace(month=1, day=1, **midnight)
    # pytz zones must be attached with localize()
    return to_utc_naive(tz.localize(start))


def _sort_key(entry: RankingUser):
    return (-entry.points, entry.user_id)


def _rank_all_time(db: Session) -> List[RankingUser]:
    users = (
        db.query(User)
        .filter(User.points > 0)
        .filter(func.lower(func.coalesce(User.role, "")) != "admin")
        .all()
    )
    ranking = [RankingUser(user_id=str(u.id), points=u.points, user=u) for u in users]
    return sorted(ranking, key=_sort_key)


def _rank_window(db: Session, start: datetime) -> List[RankingUser]:
    rows = (
        db.query(PointLog.user_id, func.sum(PointLog.points).label("total"))
        .filter(PointLog.created_at >= start)
        .group_by(PointLog.user_id)
        .all()
    )
    ranking = [RankingUser(user_id=str(row.user_id), points=int(row.total or 0)) for row in rows]
    top = sorted(ranking, key=_sort_key)[: settings.ranking_limit]
    if not top:
        return []

    user_ids = [uuid.UUID(entry.user_id) for entry in top]
    users = {str(u.id): u for u in db.query(User).filter(User.id.in_(user_ids)).all()}

    hydrated = []
    for entry in top:
        user = users.get(entry.user_id)
        if user is None or user.is_admin:
            continue
        entry.user = user
        hydrated.append(entry)
    return hydrated


def get_ranking(db: Session, period: RankingPeriod, now: Optional[datetime] = None) -> List[RankingUser]:
    """Leaderboard for a period. Read failures yield an empty list."""
    period = RankingPeriod(period)
    try:
        if period == RankingPeriod.all:
            return _rank_all_time(db)
        return _rank_window(db, get_period_start(period, now))
    except Exception:
        logger.exception("ranking_failed", period=period.value)
        return []
