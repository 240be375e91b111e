"""
Tests for database models.

Tests cover:
- Model creation and persistence
- Enum columns stored by value
- Calculated properties
- Immutable transfer records
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import text

from cellar_tracker.models import (
    ACTIVE_FILL_STATUSES,
    VESSEL_TRANSITIONS,
    Batch,
    BatchComposition,
    BatchStage,
    BatchStatus,
    BatchTransfer,
    CompositionSourceType,
    Keg,
    KegFillStatus,
    Purchase,
    PurchaseItemType,
    PurchaseLineItem,
    TransferType,
    Vessel,
    VesselStatus,
)
from cellar_tracker.services.exceptions import ImmutableRecordError


class TestVesselModel:
    def test_create_vessel(self, db_session):
        vessel = Vessel(name="Tank 1", capacity=Decimal("500"))
        db_session.add(vessel)
        db_session.commit()

        assert vessel.id is not None
        assert vessel.uuid is not None
        assert vessel.status == VesselStatus.AVAILABLE
        assert vessel.capacity_unit == "L"
        assert vessel.version == 1

    def test_status_stored_by_value(self, db_session):
        db_session.add(Vessel(name="Tank 1", capacity=Decimal("500"), status=VesselStatus.AGING))
        db_session.commit()

        assert db_session.execute(text("SELECT status FROM vessels")).scalar() == "aging"

    def test_capacity_liters(self):
        assert Vessel(capacity=Decimal("10"), capacity_unit="hL").capacity_liters == Decimal(
            "1000"
        )

    def test_to_dict(self, db_session):
        vessel = Vessel(name="Tank 1", capacity=Decimal("500"))
        db_session.add(vessel)
        db_session.commit()

        result = vessel.to_dict()

        assert result["capacity"] == "500"
        assert result["status"] == "available"
        assert isinstance(result["created_at"], str)
        assert result["deleted_at"] is None

    def test_repr(self):
        assert repr(Vessel(name="Tank 1")) == "Vessel(name='Tank 1')"


class TestEnums:
    def test_stage_maps_to_vessel_status(self):
        assert BatchStage.FERMENTING.vessel_status is VesselStatus.FERMENTING
        assert BatchStage.AGING.vessel_status is VesselStatus.AGING
        assert BatchStage.CONDITIONING.vessel_status is VesselStatus.OCCUPIED

    def test_every_status_has_transitions(self):
        assert set(VESSEL_TRANSITIONS) == set(VesselStatus)
        for status, targets in VESSEL_TRANSITIONS.items():
            assert status not in targets

    def test_occupied_statuses(self):
        assert [status for status in VesselStatus if status.is_occupied] == [
            VesselStatus.FERMENTING,
            VesselStatus.OCCUPIED,
            VesselStatus.AGING,
        ]

    def test_closed_batch_statuses(self):
        assert not BatchStatus.ACTIVE.is_closed
        assert all(
            status.is_closed
            for status in (BatchStatus.COMPLETED, BatchStatus.BLENDED, BatchStatus.DISCARDED)
        )

    def test_fill_statuses(self):
        assert KegFillStatus.RETURNED.is_terminal
        assert KegFillStatus.VOIDED.is_terminal
        assert ACTIVE_FILL_STATUSES == {
            status for status in KegFillStatus if not status.is_terminal
        }

    def test_composition_source_for_item_type(self):
        assert (
            CompositionSourceType.for_item_type(PurchaseItemType.BASE_FRUIT)
            is CompositionSourceType.BASE_FRUIT
        )
        assert (
            CompositionSourceType.for_item_type(PurchaseItemType.JUICE)
            is CompositionSourceType.JUICE_PURCHASE
        )
        with pytest.raises(ValueError, match="not liquid sources"):
            CompositionSourceType.for_item_type(PurchaseItemType.PACKAGING)


class TestPurchaseModel:
    def test_line_item_vendor(self, db_session):
        purchase = Purchase(
            vendor_name="Orchard Supply", vendor_id="vendor-9", purchase_date=date(2024, 9, 1)
        )
        line = PurchaseLineItem(
            purchase=purchase,
            item_type=PurchaseItemType.BASE_FRUIT,
            description="Bramley",
            quantity=Decimal("600"),
            unit="kg",
        )
        db_session.add_all([purchase, line])
        db_session.commit()

        assert line.vendor_id == "vendor-9"
        assert purchase.line_items == [line]
        assert line.depleted_at is None


class TestBatchModel:
    def test_live_compositions_skip_deleted_rows(self, make_vessel, db_session):
        batch = Batch(
            name="Batch 1",
            batch_number="B-001",
            vessel_id=make_vessel(),
            initial_volume=Decimal("100"),
            current_volume=Decimal("100"),
        )
        for lot_code in ("A", "B"):
            batch.compositions.append(
                BatchComposition(
                    source_type=CompositionSourceType.JUICE_PURCHASE,
                    lot_code=lot_code,
                    volume=Decimal("50"),
                    fraction_of_batch=Decimal("0.5"),
                )
            )
        db_session.add(batch)
        db_session.commit()

        batch.compositions[0].soft_delete()

        assert [row.lot_code for row in batch.live_compositions] == ["B"]
        assert batch.status == BatchStatus.ACTIVE
        assert batch.stage == BatchStage.FERMENTING
        assert batch.is_active

    def test_composition_share_round_trip(self):
        row = BatchComposition(
            source_type=CompositionSourceType.BASE_FRUIT,
            purchase_line_item_id=4,
            lot_code="BRAM",
            volume=Decimal("240"),
            fraction_of_batch=Decimal("0.6"),
            material_cost=Decimal("360"),
        )

        share = row.to_share()
        copy = BatchComposition.from_share(share, batch_id=9)

        assert share.source_id == 4
        assert share.fraction == Decimal("0.6")
        assert (copy.batch_id, copy.lot_code, copy.volume) == (9, "BRAM", Decimal("240"))


class TestKegModel:
    def test_defaults(self, db_session):
        keg = Keg(keg_number="K-001", capacity=Decimal("5"), capacity_unit="gal")
        db_session.add(keg)
        db_session.commit()

        assert keg.current_location == "cellar"
        assert keg.capacity_liters == Decimal("18.92705892")
        assert "keg_number='K-001'" in repr(keg)


class TestBatchTransferModel:
    """Transfer records are append-only."""

    @pytest.fixture
    def transfer(self, make_vessel, make_batch, db_session):
        source, dest = make_vessel(), make_vessel()
        batch_id = make_batch(source, "100")
        record = BatchTransfer(
            transfer_type=TransferType.MOVE,
            source_batch_id=batch_id,
            source_vessel_id=source,
            destination_batch_id=batch_id,
            destination_vessel_id=dest,
            volume_transferred=Decimal("100"),
            loss=Decimal("0"),
            total_volume_processed=Decimal("100"),
        )
        db_session.add(record)
        db_session.commit()
        return record

    def test_update_rejected(self, transfer, db_session):
        transfer.notes = "edited"
        with pytest.raises(ImmutableRecordError, match="Cannot update batch_transfers"):
            db_session.commit()
        db_session.rollback()

    def test_delete_rejected(self, transfer, db_session):
        db_session.delete(transfer)
        with pytest.raises(ImmutableRecordError, match="Cannot delete batch_transfers"):
            db_session.commit()
        db_session.rollback()

    def test_is_blend(self, transfer):
        assert not transfer.is_blend
