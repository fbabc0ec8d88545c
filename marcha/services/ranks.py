"""
Driver rank thresholds.

Ranks are labels over the lifetime point total. Thresholds are constants shared
by the dashboard and the leaderboard; moving one relabels existing totals.
"""
from dataclasses import dataclass
from typing import Optional, TypedDict


@dataclass(frozen=True)
class RankInfo:
    name: str
    min_points: int
    color: str
    icon: str


RANKS = (
    RankInfo(name="Novato", min_points=0, color="text-slate-500", icon="Shield"),
    RankInfo(name="Profesional", min_points=501, color="text-blue-500", icon="Award"),
    RankInfo(name="Experto", min_points=1501, color="text-emerald-500", icon="Star"),
    RankInfo(name="Maestro", min_points=3001, color="text-purple-500", icon="Crown"),
    RankInfo(name="Leyenda", min_points=6001, color="text-amber-500", icon="Trophy"),
)


class RankProgress(TypedDict):
    progress: float
    next_rank: Optional[RankInfo]
    points_to_next: int


def get_user_rank(points: int) -> RankInfo:
    rank = RANKS[0]
    for candidate in RANKS:
        if candidate.min_points <= points:
            rank = candidate
        else:
            break
    return rank


def get_next_rank_progress(points: int) -> RankProgress:
    current = get_user_rank(points)
    index = RANKS.index(current)
    if index == len(RANKS) - 1:
        return {"progress": 100.0, "next_rank": None, "points_to_next": 0}

    next_rank = RANKS[index + 1]
    span = next_rank.min_points - current.min_points
    progress = (points - current.min_points) / span * 100
    return {
        "progress": min(100.0, max(0.0, progress)),
        "next_rank": next_rank,
        "points_to_next": max(0, next_rank.min_points - points),
    }
