"""Tests for production runs.

Tests cover:
- Starting a run draws loads through the depletion gate
- Completing a run creates batches with allocated composition and cost
- Vessel availability and capacity checks on completion
- Cancelling a run releases its loads
"""

from decimal import Decimal

import pytest

from cellar_tracker.models import (
    Batch,
    PurchaseItemType,
    ProductionRunStatus,
    Vessel,
    VesselStatus,
)
from cellar_tracker.services import depletion_service, production_run_service
from cellar_tracker.services.exceptions import (
    ConflictError,
    ExceedsAvailableVolume,
    ExceedsVesselCapacity,
    InsufficientQuantity,
    InvalidStateTransition,
    ProductionRunNotFound,
    ValidationError,
    VesselNotAvailable,
)

FRUIT = PurchaseItemType.BASE_FRUIT


@pytest.fixture
def fruit_lines(make_line):
    """Two apple lots: 600 kg at 1.50/kg and 400 kg with no recorded cost."""
    return (
        make_line(item_type=FRUIT, quantity="600", unit="kg", unit_cost="1.5", lot_code="BRAM"),
        make_line(item_type=FRUIT, quantity="400", unit="kg", lot_code="DAB"),
    )


@pytest.fixture
def started_run(fruit_lines):
    first, second = fruit_lines
    return production_run_service.start_production_run(
        {
            "run_number": "PR-1",
            "loads": [
                {"purchase_line_item_id": first, "quantity": "600"},
                {"purchase_line_item_id": second, "quantity": "400"},
            ],
        },
        actor="presser",
    )


class TestStartProductionRun:
    """Tests for start_production_run."""

    def test_run_opened_with_loads(self, started_run, fruit_lines):
        assert started_run["status"] == ProductionRunStatus.IN_PROGRESS
        assert started_run["created_by"] == "presser"
        assert [load["purchase_line_item_id"] for load in started_run["loads"]] == list(
            fruit_lines
        )
        assert all(load["unit"] == "kg" for load in started_run["loads"])

    def test_lines_depleted(self, started_run, fruit_lines):
        for line_id in fruit_lines:
            assert depletion_service.get_availability(line_id)["status"] == "depleted"

    def test_load_converted_to_line_unit(self, make_line):
        line_id = make_line(item_type=FRUIT, quantity="1000", unit="kg")

        run = production_run_service.start_production_run(
            {
                "run_number": "PR-9",
                "loads": [{"purchase_line_item_id": line_id, "quantity": "1000", "unit": "lb"}],
            }
        )

        assert Decimal(run["loads"][0]["quantity"]) == Decimal("453.59237")

    def test_duplicate_run_number(self, started_run, make_line):
        line_id = make_line(item_type=FRUIT, quantity="10", unit="kg")
        with pytest.raises(ConflictError, match="already exists"):
            production_run_service.start_production_run(
                {"run_number": "PR-1", "loads": [{"purchase_line_item_id": line_id, "quantity": 1}]}
            )

    def test_packaging_rejected(self, make_line):
        line_id = make_line(item_type=PurchaseItemType.PACKAGING, quantity="100", unit="each")
        with pytest.raises(ValidationError, match="packaging"):
            production_run_service.start_production_run(
                {"run_number": "PR-2", "loads": [{"purchase_line_item_id": line_id, "quantity": 1}]}
            )

    def test_mixed_weight_and_volume_rejected(self, make_line):
        fruit = make_line(item_type=FRUIT, quantity="100", unit="kg")
        juice = make_line(quantity="100", unit="L")
        with pytest.raises(ValidationError, match="all by volume"):
            production_run_service.start_production_run(
                {
                    "run_number": "PR-2",
                    "loads": [
                        {"purchase_line_item_id": fruit, "quantity": 1},
                        {"purchase_line_item_id": juice, "quantity": 1},
                    ],
                }
            )

    def test_overdraw_writes_nothing(self, make_line):
        """A failed load leaves every line untouched."""
        ok = make_line(item_type=FRUIT, quantity="100", unit="kg")
        short = make_line(item_type=FRUIT, quantity="10", unit="kg")

        with pytest.raises(InsufficientQuantity):
            production_run_service.start_production_run(
                {
                    "run_number": "PR-2",
                    "loads": [
                        {"purchase_line_item_id": ok, "quantity": 50},
                        {"purchase_line_item_id": short, "quantity": 11},
                    ],
                }
            )

        assert depletion_service.get_availability(ok)["consumed_quantity"] == Decimal("0")

    def test_audit_events(self, fruit_lines, audit_events):
        load = {"purchase_line_item_id": fruit_lines[0], "quantity": 1}
        production_run_service.start_production_run({"run_number": "PR-3", "loads": [load]})
        assert [(event.table_name, event.operation) for event in audit_events] == [
            ("production_runs", "create"),
            ("production_run_loads", "create"),
        ]


class TestCompleteProductionRun:
    """Tests for complete_production_run."""

    def test_batches_created_in_vessels(self, started_run, make_vessel, db_session):
        first_vessel = make_vessel(capacity="500")
        second_vessel = make_vessel(capacity="250")

        result = production_run_service.complete_production_run(
            {
                "run_id": started_run["id"],
                "yield_volume": "600",
                "assignments": [
                    {"vessel_id": first_vessel, "volume": "400", "batch_name": "Bramley Dry"},
                    {"vessel_id": second_vessel, "volume": "200", "stage": "aging"},
                ],
            },
            actor="presser",
        )

        assert result["status"] == ProductionRunStatus.COMPLETED
        assert Decimal(result["yield_volume"]) == Decimal("600")
        first, second = result["batches"]
        assert (first["batch_number"], first["name"]) == ("PR-1-1", "Bramley Dry")
        assert (second["batch_number"], second["name"]) == ("PR-1-2", "PR-1-2")
        assert Decimal(first["current_volume"]) == Decimal("400")
        assert first["origin_production_run_id"] == started_run["id"]

        assert db_session.get(Vessel, first_vessel).status == VesselStatus.FERMENTING
        assert db_session.get(Vessel, second_vessel).status == VesselStatus.AGING

    def test_composition_follows_load_weights(self, started_run, make_vessel, fruit_lines):
        vessel_id = make_vessel(capacity="500")

        result = production_run_service.complete_production_run(
            {
                "run_id": started_run["id"],
                "yield_volume": "600",
                "assignments": [{"vessel_id": vessel_id, "volume": "400"}],
            }
        )

        composition = {row["source_id"]: row for row in result["batches"][0]["composition"]}
        bramley, dabinett = fruit_lines
        assert composition[bramley]["fraction"] == Decimal("0.6")
        assert composition[bramley]["volume"] == Decimal("240")
        assert composition[dabinett]["volume"] == Decimal("160")
        assert composition[bramley]["lot_code"] == "BRAM"
        assert composition[bramley]["source_type"] == "base_fruit"

    def test_cost_prorated_by_yield_share(self, started_run, make_vessel, fruit_lines):
        """900.00 of fruit; a batch taking 400 of 600 L carries 600.00."""
        vessel_id = make_vessel(capacity="500")

        result = production_run_service.complete_production_run(
            {
                "run_id": started_run["id"],
                "yield_volume": "600",
                "assignments": [{"vessel_id": vessel_id, "volume": "400"}],
            }
        )

        composition = {row["source_id"]: row for row in result["batches"][0]["composition"]}
        assert composition[fruit_lines[0]]["material_cost"] == Decimal("600")
        assert composition[fruit_lines[1]]["material_cost"] is None

    def test_single_assignment_uses_run_number(self, started_run, make_vessel):
        vessel_id = make_vessel(capacity="700")
        result = production_run_service.complete_production_run(
            {
                "run_id": started_run["id"],
                "yield_volume": "600",
                "assignments": [{"vessel_id": vessel_id, "volume": "600"}],
            }
        )
        assert result["batches"][0]["batch_number"] == "PR-1"

    def test_assignments_exceed_yield(self, started_run, make_vessel):
        vessel_id = make_vessel(capacity="1000")
        with pytest.raises(ExceedsAvailableVolume, match="yielded 600"):
            production_run_service.complete_production_run(
                {
                    "run_id": started_run["id"],
                    "yield_volume": "600",
                    "assignments": [{"vessel_id": vessel_id, "volume": "601"}],
                }
            )

    def test_vessel_not_available(self, started_run, make_vessel, db_session):
        vessel_id = make_vessel(capacity="1000", status=VesselStatus.CLEANING)

        with pytest.raises(VesselNotAvailable):
            production_run_service.complete_production_run(
                {
                    "run_id": started_run["id"],
                    "yield_volume": "600",
                    "assignments": [{"vessel_id": vessel_id, "volume": "600"}],
                }
            )

        assert db_session.query(Batch).count() == 0

    def test_capacity_checked(self, started_run, make_vessel):
        vessel_id = make_vessel(capacity="100", capacity_unit="gal")
        with pytest.raises(ExceedsVesselCapacity):
            production_run_service.complete_production_run(
                {
                    "run_id": started_run["id"],
                    "yield_volume": "600",
                    "assignments": [{"vessel_id": vessel_id, "volume": "400"}],
                }
            )

    def test_only_once(self, started_run, make_vessel):
        first = make_vessel(capacity="700")
        second = make_vessel(capacity="700")
        request = {
            "run_id": started_run["id"],
            "yield_volume": "600",
            "assignments": [{"vessel_id": first, "volume": "600"}],
        }
        production_run_service.complete_production_run(request)

        request["assignments"] = [{"vessel_id": second, "volume": "600"}]
        with pytest.raises(InvalidStateTransition, match="in_progress"):
            production_run_service.complete_production_run(request)

    def test_missing_run(self, test_db):
        with pytest.raises(ProductionRunNotFound):
            production_run_service.complete_production_run(
                {"run_id": 42, "yield_volume": "1", "assignments": [{"vessel_id": 1, "volume": 1}]}
            )


class TestCancelProductionRun:
    def test_cancel_releases_loads(self, started_run, fruit_lines, audit_events):
        result = production_run_service.cancel_production_run(
            started_run["id"], reason="press jammed", actor="presser"
        )

        assert result["status"] == ProductionRunStatus.CANCELLED
        assert result["loads"] == []
        for line_id in fruit_lines:
            assert depletion_service.get_availability(line_id)["status"] == "active"
        assert audit_events[-1].reason == "press jammed"

    def test_cancel_completed_run_rejected(self, started_run, make_vessel):
        vessel_id = make_vessel(capacity="700")
        production_run_service.complete_production_run(
            {
                "run_id": started_run["id"],
                "yield_volume": "600",
                "assignments": [{"vessel_id": vessel_id, "volume": "600"}],
            }
        )

        with pytest.raises(InvalidStateTransition):
            production_run_service.cancel_production_run(started_run["id"])


class TestGetProductionRun:
    def test_get(self, started_run):
        run = production_run_service.get_production_run(started_run["id"])
        assert run["run_number"] == "PR-1"
        assert len(run["loads"]) == 2

    def test_missing(self, test_db):
        with pytest.raises(ProductionRunNotFound):
            production_run_service.get_production_run(7)
