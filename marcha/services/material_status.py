"""
Material condition of inventory stacks.

Older documents carry 'new', 'ok' and 'broken'. They are mapped to canonical
values when a stack is read, so any later write of the stack stores the
canonical value.
"""
from enum import Enum
from typing import Optional


class MaterialCondition(str, Enum):
    new_functional = "new_functional"
    working_urgent_change = "working_urgent_change"
    totally_broken = "totally_broken"
    ordered = "ordered"
    pending_management = "pending_management"
    resolved = "resolved"


LEGACY_STATUS_MAP = {
    "new": MaterialCondition.new_functional,
    "ok": MaterialCondition.new_functional,
    "broken": MaterialCondition.totally_broken,
}

MATERIAL_STATUS_LABELS = {
    MaterialCondition.pending_management: "Pendiente de gestionar",
    MaterialCondition.new_functional: "Nuevo o funcional",
    MaterialCondition.working_urgent_change: "Funciona pero urge un cambio",
    MaterialCondition.totally_broken: "Completamente roto",
    MaterialCondition.ordered: "Pedido",
    MaterialCondition.resolved: "Resuelto",
}

# Conditions a driver may choose when reporting material
DRIVER_CONDITIONS = (
    MaterialCondition.new_functional,
    MaterialCondition.working_urgent_change,
)

# Stacks a repaired unit can be taken from
RESTORABLE_CONDITIONS = frozenset({
    MaterialCondition.totally_broken,
    MaterialCondition.working_urgent_change,
    MaterialCondition.ordered,
})


def normalize_condition(value) -> Optional[MaterialCondition]:
    """Map a stored status to its canonical condition. An unset status stays None."""
    if value is None or value == "":
        return None
    if isinstance(value, MaterialCondition):
        return value
    legacy = LEGACY_STATUS_MAP.get(value)
    if legacy is not None:
        return legacy
    try:
        return MaterialCondition(value)
    except ValueError:
        raise ValueError(f"Unknown material condition: {value!r}") from None


def is_legacy_status(value) -> bool:
    return value is None or value == "" or value in LEGACY_STATUS_MAP


def is_healthy(status: Optional[MaterialCondition]) -> bool:
    return status in (None, MaterialCondition.new_functional, MaterialCondition.working_urgent_change)


def health_rank(status: Optional[MaterialCondition]) -> int:
    """Lower is more usable. Only meaningful for healthy stacks."""
    if status is None or status == MaterialCondition.new_functional:
        return 0
    if status == MaterialCondition.working_urgent_change:
        return 1
    return 2


def label_for(status: Optional[MaterialCondition]) -> str:
    if status is None:
        return MATERIAL_STATUS_LABELS[MaterialCondition.new_functional]
    return MATERIAL_STATUS_LABELS[status]
