"""
Inventory location transaction tests.

Every report or restore moves exactly one unit; the sum of stack quantities
never changes outside admin edits.
"""

import uuid

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from marcha.config import settings
from marcha.models.models import Incident, InventoryItem
from marcha.services import inventory_locations
from marcha.services.concurrency import TransactionConflict, run_with_retry
from marcha.services.inventory_locations import (
    IncidentNotRestorable,
    InvalidLocations,
    ItemNotFound,
    ItemNotFoundAtLocation,
    NoRestorableUnitFound,
    NoUnitAtSource,
    items_needing_status_audit,
    load_stacks,
    mark_stack_broken,
    migrate_legacy_statuses,
    report_material_incident,
    restore_material,
    set_item_locations,
    total_quantity,
    unassigned_quantity,
)


def stack(location_id, quantity, status=None, type_="warehouse"):
    out = {"type": type_, "id": location_id, "quantity": quantity}
    if status is not None:
        out["status"] = status
    return out


def report(db_session, item, location_id, condition="totally_broken", **data):
    data.setdefault("title", "Material dañado")
    return report_material_incident(db_session, data, item.id, location_id, condition)


def open_incident(db_session, item, location_id=None, condition=None, status="open"):
    incident = Incident(
        title="Revisión",
        status=status,
        inventory_item_id=item.id,
        source_location_id=location_id,
        material_condition=condition,
    )
    db_session.add(incident)
    db_session.commit()
    db_session.refresh(incident)
    return incident


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(settings, "transaction_backoff", 0.0)


# =============================================================================
# REPORTING
# =============================================================================


class TestReportMaterialIncident:

    def test_one_unit_split_from_larger_stack(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 3)])

        incident = report(db_session, item, "W1", "totally_broken")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 2),
            stack("W1", 1, "totally_broken"),
        ]
        assert incident.status == "open"
        assert incident.inventory_item_id == item.id
        assert incident.source_location_id == "W1"
        assert incident.source_location_type == "warehouse"
        assert incident.material_condition == "totally_broken"
        assert incident.vehicle_id is None
        assert db_session.query(Incident).count() == 1

    def test_single_unit_changes_status_in_place(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1)])

        report(db_session, item, "W1", "totally_broken")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 1, "totally_broken")]

    def test_second_report_joins_the_split_off_stack(self, db_session, make_item):
        item = make_item(quantity=5, locations=[stack("W1", 5)])

        report(db_session, item, "W1", "totally_broken")
        report(db_session, item, "W1", "totally_broken")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 3), stack("W1", 2, "totally_broken")]
        assert db_session.query(Incident).count() == 2

        # The stored stacks are accepted back unchanged by an admin edit
        set_item_locations(db_session, item.id, list(item.locations))
        db_session.refresh(item)
        assert item.locations == [stack("W1", 3), stack("W1", 2, "totally_broken")]

    def test_last_unit_merges_into_matching_stack(self, db_session, make_item):
        item = make_item(quantity=2, locations=[stack("W1", 1, "totally_broken"), stack("W1", 1)])

        report(db_session, item, "W1", "totally_broken")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 2, "totally_broken")]

    def test_unit_already_in_reported_condition_stays_put(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 3, "working_urgent_change")])

        incident = report(db_session, item, "W1", "working_urgent_change")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 3, "working_urgent_change")]
        assert incident.status == "open"
        assert incident.material_condition == "working_urgent_change"

    def test_vehicle_source_fills_vehicle_id(self, db_session, make_item):
        item = make_item(quantity=2, locations=[stack("V-12", 2, type_="vehicle")])

        incident = report(db_session, item, "V-12", "working_urgent_change")

        assert incident.vehicle_id == "V-12"
        assert incident.source_location_type == "vehicle"
        assert incident.type == "material"

    def test_most_usable_stack_is_preferred(self, db_session, make_item):
        item = make_item(quantity=5, locations=[
            stack("W1", 2, "working_urgent_change"),
            stack("W1", 3, "new_functional"),
        ])

        report(db_session, item, "W1")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 2, "working_urgent_change"),
            stack("W1", 2, "new_functional"),
            stack("W1", 1, "totally_broken"),
        ]

    def test_legacy_ok_counts_as_healthy(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 1, "broken"), stack("W1", 2, "ok")])

        report(db_session, item, "W1", "working_urgent_change")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 1, "totally_broken"),
            stack("W1", 1, "new_functional"),
            stack("W1", 1, "working_urgent_change"),
        ]

    def test_falls_back_to_any_stack_not_merely_ordered(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 1, "ordered"), stack("W1", 2, "totally_broken")])

        report(db_session, item, "W1", "pending_management")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 1, "ordered"),
            stack("W1", 1, "totally_broken"),
            stack("W1", 1, "pending_management"),
        ]

    def test_only_ordered_stock_is_not_found(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1, "ordered")])

        with pytest.raises(ItemNotFoundAtLocation):
            report(db_session, item, "W1")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 1, "ordered")]
        assert db_session.query(Incident).count() == 0

    def test_location_without_stock(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1)])
        with pytest.raises(ItemNotFoundAtLocation):
            report(db_session, item, "W2")

    def test_unknown_item(self, db_session):
        with pytest.raises(ItemNotFound):
            report_material_incident(db_session, {"title": "x"}, uuid.uuid4(), "W1", "totally_broken")

    def test_unknown_condition(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1)])
        with pytest.raises(ValueError):
            report(db_session, item, "W1", "melted")

    def test_reporter_and_details_are_kept(self, db_session, make_item, make_user):
        driver = make_user()
        item = make_item(quantity=1, locations=[stack("W1", 1)])

        incident = report(
            db_session, item, "W1",
            title="Foco sin luz",
            description="No enciende",
            priority="high",
            images=["https://img/1.jpg"],
            reported_by_user_id=str(driver.id),
        )

        assert incident.title == "Foco sin luz"
        assert incident.priority == "high"
        assert incident.images == ["https://img/1.jpg"]
        assert incident.reported_by_user_id == driver.id


# =============================================================================
# RESTORING
# =============================================================================


class TestRestoreMaterial:

    def test_reverses_a_report(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 3)])
        incident = report(db_session, item, "W1")

        restored = restore_material(db_session, incident.id, item.id, "V-7", "vehicle")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 2),
            stack("V-7", 1, "new_functional", type_="vehicle"),
        ]
        assert restored.status == "resolved"
        assert restored.updated_at is not None

    def test_merges_into_matching_stack(self, db_session, make_item):
        item = make_item(quantity=2, locations=[stack("W1", 2, "new_functional")])
        incident = report(db_session, item, "W1")

        restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 2, "new_functional")]

    def test_prefers_reported_condition_at_source(self, db_session, make_item):
        item = make_item(quantity=2, locations=[
            stack("W1", 1, "working_urgent_change"),
            stack("W1", 1, "totally_broken"),
        ])
        incident = open_incident(db_session, item, "W1", "totally_broken")

        restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 1, "working_urgent_change"),
            stack("W1", 1, "new_functional"),
        ]

    def test_prefers_source_location(self, db_session, make_item):
        item = make_item(quantity=2, locations=[
            stack("W2", 1, "totally_broken"),
            stack("W1", 1, "totally_broken"),
        ])
        incident = open_incident(db_session, item, "W1", "totally_broken")

        restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        assert item.locations == [
            stack("W2", 1, "totally_broken"),
            stack("W1", 1, "new_functional"),
        ]

    def test_any_restorable_stack_when_source_has_none(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 2), stack("W3", 1, "ordered")])
        incident = open_incident(db_session, item, "W1", "totally_broken")

        restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 2), stack("W1", 1, "new_functional")]

    def test_repair_pool_is_used_last(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 2), stack("REPAIR_POOL", 1)])
        incident = open_incident(db_session, item, "W1", "totally_broken")

        restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        assert item.locations == [stack("W1", 2), stack("W1", 1, "new_functional")]

    def test_healthy_stock_is_never_consumed(self, db_session, make_item):
        item = make_item(quantity=4, locations=[stack("W1", 3), stack("V-1", 1, "new_functional", "vehicle")])
        incident = open_incident(db_session, item, "W1", "totally_broken")

        with pytest.raises(NoRestorableUnitFound):
            restore_material(db_session, incident.id, item.id, "W1", "warehouse")

        db_session.refresh(item)
        db_session.refresh(incident)
        assert total_quantity(load_stacks(item)) == 4
        assert item.locations == [stack("W1", 3), stack("V-1", 1, "new_functional", "vehicle")]
        assert incident.status == "open"

    def test_no_restorable_unit_is_a_no_unit_at_source(self):
        assert issubclass(NoRestorableUnitFound, NoUnitAtSource)

    def test_resolved_incident_is_rejected(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1, "totally_broken")])
        incident = open_incident(db_session, item, "W1", "totally_broken", status="resolved")

        with pytest.raises(IncidentNotRestorable):
            restore_material(db_session, incident.id, item.id, "W1", "warehouse")

    def test_incident_for_other_item_is_rejected(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1, "totally_broken")])
        other = make_item(name="Cable XLR", quantity=1, locations=[stack("W1", 1)])
        incident = open_incident(db_session, other, "W1", "totally_broken")

        with pytest.raises(IncidentNotRestorable):
            restore_material(db_session, incident.id, item.id, "W1", "warehouse")

    def test_unknown_target_type(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1, "totally_broken")])
        incident = open_incident(db_session, item, "W1", "totally_broken")
        with pytest.raises(ValueError):
            restore_material(db_session, incident.id, item.id, "W1", "depot")


class TestConservation:

    def test_total_is_invariant_over_report_and_restore_sequence(self, db_session, make_item):
        item = make_item(quantity=12, locations=[
            stack("W1", 5),
            stack("W2", 3, "new_functional"),
            stack("V-1", 2, "working_urgent_change", "vehicle"),
            stack("REPAIR_POOL", 2),
        ])
        incidents = []
        steps = [
            ("report", "W1", "totally_broken"),
            ("report", "W1", "working_urgent_change"),
            ("report", "V-1", "totally_broken"),
            ("restore", "W2", "warehouse"),
            ("report", "W2", "ordered"),
            ("restore", "V-1", "vehicle"),
            ("report", "W1", "totally_broken"),
            ("restore", "W1", "warehouse"),
            ("restore", "W3", "warehouse"),
            ("restore", "W3", "warehouse"),
        ]

        for kind, location, arg in steps:
            if kind == "report":
                incidents.append(report(db_session, item, location, arg))
            else:
                incident = incidents.pop(0) if incidents else open_incident(db_session, item)
                restore_material(db_session, incident.id, item.id, location, arg)
            db_session.refresh(item)
            stacks = load_stacks(item)
            assert total_quantity(stacks) == 12
            assert all(s.quantity > 0 for s in stacks)
            slots = [(s.type, s.id, s.status) for s in stacks]
            assert len(slots) == len(set(slots))


# =============================================================================
# ADMIN EDITS
# =============================================================================


class TestSetItemLocations:

    def test_replaces_stacks_and_normalizes_status(self, db_session, make_item):
        item = make_item(quantity=5, locations=[stack("W1", 5)])

        set_item_locations(db_session, item.id, [stack("W1", 3, "ok"), stack("V-2", 1, "broken", "vehicle")])

        db_session.refresh(item)
        assert item.locations == [
            stack("W1", 3, "new_functional"),
            stack("V-2", 1, "totally_broken", "vehicle"),
        ]
        assert unassigned_quantity(item) == 1

    def test_cannot_assign_more_than_quantity(self, db_session, make_item):
        item = make_item(quantity=2)
        with pytest.raises(InvalidLocations):
            set_item_locations(db_session, item.id, [stack("W1", 2), stack("W2", 1)])

    @pytest.mark.parametrize(
        "locations",
        [
            [stack("W1", 1, type_="garage")],
            [{"type": "warehouse", "quantity": 1}],
            [stack("W1", 0)],
            [stack("W1", 1), stack("W1", 1)],
            [stack("W1", 1, "melted")],
        ],
    )
    def test_rejects_invalid_stacks(self, db_session, make_item, locations):
        item = make_item(quantity=10)
        with pytest.raises(InvalidLocations):
            set_item_locations(db_session, item.id, locations)

    def test_same_location_with_different_status_is_allowed(self, db_session, make_item):
        item = make_item(quantity=3)
        set_item_locations(db_session, item.id, [stack("W1", 2), stack("W1", 1, "totally_broken")])
        db_session.refresh(item)
        assert len(item.locations) == 2


class TestMarkStackBroken:

    def test_splits_one_unit(self, db_session, make_item):
        item = make_item(quantity=4, locations=[stack("W1", 4, "new_functional")])

        mark_stack_broken(db_session, item.id, 0)

        db_session.refresh(item)
        assert item.locations == [stack("W1", 3, "new_functional"), stack("W1", 1, "totally_broken")]
        assert db_session.query(Incident).count() == 0

    def test_second_unit_joins_broken_stack(self, db_session, make_item):
        item = make_item(quantity=4, locations=[stack("W1", 4, "new_functional")])

        mark_stack_broken(db_session, item.id, 0)
        mark_stack_broken(db_session, item.id, 0)

        db_session.refresh(item)
        assert item.locations == [stack("W1", 2, "new_functional"), stack("W1", 2, "totally_broken")]

    def test_already_broken_stack_is_rejected(self, db_session, make_item):
        item = make_item(quantity=3, locations=[stack("W1", 3, "totally_broken")])

        with pytest.raises(InvalidLocations):
            mark_stack_broken(db_session, item.id, 0)

        db_session.refresh(item)
        assert item.locations == [stack("W1", 3, "totally_broken")]

    def test_out_of_range_index(self, db_session, make_item):
        item = make_item(quantity=1, locations=[stack("W1", 1)])
        with pytest.raises(NoUnitAtSource):
            mark_stack_broken(db_session, item.id, 3)


class TestLegacyStatusMigration:

    @pytest.fixture
    def items(self, make_item):
        legacy = make_item(name="Atril", quantity=3, locations=[stack("W1", 2), stack("W1", 1, "broken")])
        old_ok = make_item(name="Micro", quantity=1, locations=[stack("V-3", 1, "new", "vehicle")])
        clean = make_item(name="Foco", quantity=1, locations=[stack("W1", 1, "new_functional")])
        return legacy, old_ok, clean

    def test_audit_lists_items_with_unset_or_legacy_status(self, db_session, items):
        legacy, old_ok, _ = items
        assert {i.id for i in items_needing_status_audit(db_session)} == {legacy.id, old_ok.id}

    def test_dry_run_changes_nothing(self, db_session, items):
        legacy = items[0]
        assert migrate_legacy_statuses(db_session, dry_run=True) == 2
        db_session.refresh(legacy)
        assert legacy.locations == [stack("W1", 2), stack("W1", 1, "broken")]

    def test_migration_rewrites_statuses(self, db_session, items):
        legacy, old_ok, clean = items

        assert migrate_legacy_statuses(db_session) == 2

        for item in items:
            db_session.refresh(item)
        assert legacy.locations == [stack("W1", 2, "new_functional"), stack("W1", 1, "totally_broken")]
        assert old_ok.locations == [stack("V-3", 1, "new_functional", "vehicle")]
        assert clean.locations == [stack("W1", 1, "new_functional")]
        assert items_needing_status_audit(db_session) == []


# =============================================================================
# CONCURRENCY
# =============================================================================


class TestRetries:

    def test_retries_until_success(self, db_session):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise StaleDataError("version mismatch")
            return "done"

        assert run_with_retry(db_session, flaky, attempts=3, backoff_base=0) == "done"
        assert calls["n"] == 3

    def test_exhausted_retries_raise_conflict(self, db_session):
        calls = {"n": 0}

        def always_stale():
            calls["n"] += 1
            raise StaleDataError("version mismatch")

        with pytest.raises(TransactionConflict):
            run_with_retry(db_session, always_stale, attempts=2, backoff_base=0)
        assert calls["n"] == 2

    def test_other_errors_are_not_retried(self, db_session):
        calls = {"n": 0}

        def broken():
            calls["n"] += 1
            raise ItemNotFound("gone")

        with pytest.raises(ItemNotFound):
            run_with_retry(db_session, broken, attempts=3, backoff_base=0)
        assert calls["n"] == 1

    def test_concurrent_write_reruns_from_fresh_read(self, engine, db_session, make_item, monkeypatch):
        item = make_item(quantity=5, locations=[stack("W1", 5)])
        other = sessionmaker(bind=engine, autoflush=False)()
        real_split = inventory_locations._split_unit
        calls = {"n": 0}

        def split_after_concurrent_edit(stacks, index, condition):
            calls["n"] += 1
            if calls["n"] == 1:
                row = other.get(InventoryItem, item.id)
                row.notes = "edited from another request"
                other.commit()
            real_split(stacks, index, condition)

        monkeypatch.setattr(inventory_locations, "_split_unit", split_after_concurrent_edit)
        report(db_session, item, "W1")
        other.close()

        db_session.refresh(item)
        assert calls["n"] == 2
        assert item.notes == "edited from another request"
        assert item.locations == [stack("W1", 4), stack("W1", 1, "totally_broken")]
        assert db_session.query(Incident).count() == 1
