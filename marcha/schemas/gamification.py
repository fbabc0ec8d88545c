import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator


class RankInfoResponse(BaseModel):
    name: str
    min_points: int
    color: str
    icon: str

    class Config:
        from_attributes = True


class RankProgressResponse(BaseModel):
    points: int
    rank: RankInfoResponse
    progress: float
    next_rank: Optional[RankInfoResponse] = None
    points_to_next: int


class UserSummary(BaseModel):
    id: uuid.UUID
    email: str
    name: str
    first_surname: Optional[str] = None
    avatar: Optional[str] = None
    role: str
    points: int

    class Config:
        from_attributes = True


class RankingEntry(BaseModel):
    user_id: str
    points: int
    rank: RankInfoResponse
    user: Optional[UserSummary] = None


class AwardRequest(BaseModel):
    action_key: str
    custom_reason: Optional[str] = None


class AwardResponse(BaseModel):
    action_key: str
    points_awarded: int


class GamificationConfigResponse(BaseModel):
    actions: Dict[str, int]
    updated_at: Optional[datetime] = None
    updated_by: Optional[uuid.UUID] = None


class GamificationConfigUpdate(BaseModel):
    actions: Dict[str, int]

    @field_validator("actions")
    @classmethod
    def non_negative(cls, v):
        for key, value in v.items():
            if value < 0:
                raise ValueError(f"points for '{key}' must be >= 0")
        return v


class BackfillResponse(BaseModel):
    updated_count: int
    errors_count: int


class BackfillUserRequest(BaseModel):
    email: str


class BackfillUserResponse(BaseModel):
    success: bool
    diff: int
    message: Optional[str] = None


class PointLogSample(BaseModel):
    id: str
    points: int
    reason: str
    created_at: Optional[datetime] = None


class DebugUserResponse(BaseModel):
    user: dict
    points_mismatch: int
    logged_total: int
    logs_count: int
    logs_sample: List[PointLogSample]
