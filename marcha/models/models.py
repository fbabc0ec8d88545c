import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    ForeignKey,
    Integer,
    Float,
    JSON,
    Text,
    Index,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..time_utils import utcnow


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    first_surname: Mapped[Optional[str]] = mapped_column(String(255))
    second_surname: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(50), default="conductor", index=True)  # admin|conductor|manager
    status: Mapped[str] = mapped_column(String(50), default="active")  # active|inactive|pending|rejected|blocked
    # Denormalized running total; the point_logs ledger is authoritative
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avatar: Mapped[Optional[str]] = mapped_column(String(1024))
    assigned_vehicle_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    point_logs = relationship("PointLog", back_populates="user", order_by="PointLog.created_at.desc()")

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"

    @property
    def full_name(self) -> str:
        parts = [self.name or "", self.first_surname or "", self.second_surname or ""]
        return " ".join(part for part in parts if part).strip()


# =====================
# Gamification domain
# =====================

class PointLog(Base):
    """Append-only ledger of point awards, one row per awarded action occurrence"""
    __tablename__ = "point_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)  # action key or reconciliation tag
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    user = relationship("User", back_populates="point_logs")

    __table_args__ = (
        Index('idx_point_log_user_created', 'user_id', 'created_at'),
    )


class SystemSetting(Base):
    """Singleton configuration documents keyed by name (e.g. 'gamification')"""
    __tablename__ = "system_settings"

    id: Mapped[uuid.UUID] = uuid_pk()
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    value: Mapped[Optional[dict]] = mapped_column(JSON)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))


# =====================
# Inventory & Incidents domain
# =====================

class InventoryItem(Base):
    """Material distributed over warehouses and vehicles as (location, status) stacks"""
    __tablename__ = "inventory_items"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), index=True)  # sound|lighting|instruments|cables|misc
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, default=0)  # Legacy aggregate, also the cap for assigned stock
    # Array of {type: warehouse|vehicle, id, quantity, status?}
    locations: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Concurrent writers of the same row fail with StaleDataError on flush
    __mapper_args__ = {"version_id_col": version}


class Incident(Base):
    __tablename__ = "incidents"

    id: Mapped[uuid.UUID] = uuid_pk()
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[Optional[str]] = mapped_column(String(50))  # mechanical|material|...
    priority: Mapped[str] = mapped_column(String(20), default="medium", index=True)  # low|medium|high|critical
    status: Mapped[str] = mapped_column(String(50), default="open", index=True)  # open|in_progress|resolved|closed
    vehicle_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    reported_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    inventory_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("inventory_items.id", ondelete="SET NULL"), index=True)
    source_location_id: Mapped[Optional[str]] = mapped_column(String(64))
    source_location_type: Mapped[Optional[str]] = mapped_column(String(20))  # warehouse|vehicle
    material_condition: Mapped[Optional[str]] = mapped_column(String(50))  # condition the unit was reported in
    images: Mapped[Optional[list]] = mapped_column(JSON)
    cost: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_incident_item_status', 'inventory_item_id', 'status'),
    )
