"""Tests for batch lifecycle and composition persistence."""

from decimal import Decimal

import pytest

from cellar_tracker.models import Batch, BatchStage, BatchStatus, Vessel, VesselStatus
from cellar_tracker.services import batch_service
from cellar_tracker.services.composition import fraction_total, volume_total
from cellar_tracker.services.exceptions import (
    BatchClosedError,
    BatchNotFound,
    ExceedsVesselCapacity,
    ValidationError,
    VesselNotFound,
)


class TestBatchQueries:
    def test_get_batch_with_composition(self, make_vessel, make_batch, make_line):
        first, second = make_line(), make_line()
        batch_id = make_batch(make_vessel(), "400", sources=[(first, "0.75"), (second, "0.25")])

        batch = batch_service.get_batch(batch_id)

        assert batch["status"] == BatchStatus.ACTIVE
        assert [row["source_id"] for row in batch["composition"]] == [first, second]
        assert [row["volume"] for row in batch["composition"]] == [
            Decimal("300"),
            Decimal("100"),
        ]

    def test_get_missing(self, test_db):
        with pytest.raises(BatchNotFound):
            batch_service.get_batch(3)

    def test_active_batch(self, make_vessel, make_batch):
        vessel_id = make_vessel()
        assert batch_service.get_active_batch(vessel_id) is None

        batch_id = make_batch(vessel_id, "100")

        assert batch_service.get_active_batch(vessel_id)["id"] == batch_id

    def test_active_batch_missing_vessel(self, test_db):
        with pytest.raises(VesselNotFound):
            batch_service.get_active_batch(11)

    def test_get_composition(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(), "100")
        shares = batch_service.get_composition(batch_id)
        assert volume_total(shares) == Decimal("100")
        assert fraction_total(shares) == Decimal("1")


class TestSetBatchStage:
    def test_vessel_follows_stage(self, make_vessel, make_batch, db_session):
        vessel_id = make_vessel()
        batch_id = make_batch(vessel_id, "100")

        batch = batch_service.set_batch_stage(batch_id, "conditioning")

        assert batch["stage"] == BatchStage.CONDITIONING
        assert db_session.get(Vessel, vessel_id).status == VesselStatus.OCCUPIED

    def test_unknown_stage(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(), "100")
        with pytest.raises(ValidationError, match="Unknown batch stage"):
            batch_service.set_batch_stage(batch_id, "bottled")

    def test_closed_batch(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(), "100")
        batch_service.complete_batch(batch_id)
        with pytest.raises(BatchClosedError):
            batch_service.set_batch_stage(batch_id, BatchStage.AGING)


class TestCompleteBatch:
    def test_vessel_goes_to_cleaning(self, make_vessel, make_batch, db_session, audit_events):
        vessel_id = make_vessel()
        batch_id = make_batch(vessel_id, "3")

        batch = batch_service.complete_batch(batch_id, reason="lees")

        assert batch["status"] == BatchStatus.COMPLETED
        assert batch["end_date"] is not None
        assert Decimal(batch["current_volume"]) == Decimal("3")
        assert batch["vessel_id"] == vessel_id
        assert db_session.get(Vessel, vessel_id).status == VesselStatus.CLEANING
        assert [event.table_name for event in audit_events] == ["batches", "vessels"]

    def test_twice(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(), "3")
        batch_service.complete_batch(batch_id)
        with pytest.raises(BatchClosedError, match="closed to further changes"):
            batch_service.complete_batch(batch_id)


class TestAdjustBatchVolume:
    """Tests for measured volume corrections."""

    def test_composition_scaled(self, make_vessel, make_batch, make_line):
        first, second = make_line(), make_line()
        batch_id = make_batch(
            make_vessel(), "400", sources=[(first, "0.75"), (second, "0.25")], cost="800"
        )

        batch = batch_service.adjust_batch_volume(batch_id, "380", "evaporation")

        assert Decimal(batch["current_volume"]) == Decimal("380")
        volumes = [row["volume"] for row in batch["composition"]]
        assert volumes == [Decimal("285"), Decimal("95")]
        assert [row["fraction"] for row in batch["composition"]] == [
            Decimal("0.75"),
            Decimal("0.25"),
        ]
        assert sum(row["material_cost"] for row in batch["composition"]) == Decimal("760")

    def test_zero_completes_batch(self, make_vessel, make_batch, db_session):
        vessel_id = make_vessel()
        batch_id = make_batch(vessel_id, "50")

        batch = batch_service.adjust_batch_volume(batch_id, 0, "dumped lees")

        assert batch["status"] == BatchStatus.COMPLETED
        assert db_session.get(Vessel, vessel_id).status == VesselStatus.CLEANING

    def test_capacity(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(capacity="100"), "50")
        with pytest.raises(ExceedsVesselCapacity):
            batch_service.adjust_batch_volume(batch_id, "101", "topped up")

    def test_validation(self, make_vessel, make_batch):
        batch_id = make_batch(make_vessel(), "50")
        with pytest.raises(ValidationError) as exc_info:
            batch_service.adjust_batch_volume(batch_id, "-1", " ")
        assert exc_info.value.errors == ["new_volume cannot be negative", "reason is required"]

    def test_closed_batch_untouched(self, make_vessel, make_batch, db_session):
        batch_id = make_batch(make_vessel(), "50")
        batch_service.complete_batch(batch_id)

        with pytest.raises(BatchClosedError):
            batch_service.adjust_batch_volume(batch_id, "40", "remeasured")

        assert db_session.get(Batch, batch_id).current_volume == Decimal("50")


class TestWriteComposition:
    def test_rows_matched_by_source(self, make_vessel, make_batch, make_line, db_session):
        first, second = make_line(), make_line()
        batch_id = make_batch(make_vessel(), "100", sources=[(first, "0.5"), (second, "0.5")])
        batch = db_session.get(Batch, batch_id)
        kept = [share for share in batch_service.shares_of(batch) if share.source_id == first]

        batch_service.write_composition(db_session, batch, kept)
        db_session.flush()

        assert [row.purchase_line_item_id for row in batch.live_compositions] == [first]
        assert len(batch.compositions) == 2
