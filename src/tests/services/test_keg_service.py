"""Tests for keg fleet management."""

from decimal import Decimal

import pytest

from cellar_tracker.models import Keg, KegCondition, KegStatus, KegType
from cellar_tracker.services import keg_fill_service, keg_service
from cellar_tracker.services.exceptions import (
    ConflictError,
    InUseError,
    InvalidStateTransition,
    KegNotFound,
    ValidationError,
)


@pytest.fixture
def filled_keg(make_vessel, make_batch, make_keg):
    """A 20 L keg holding an 18 L fill; returns (keg_id, fill_id)."""
    vessel_id = make_vessel()
    batch_id = make_batch(vessel_id, "200")
    keg_id = make_keg(capacity="20")
    result = keg_fill_service.fill_kegs(
        {
            "batch_id": batch_id,
            "vessel_id": vessel_id,
            "kegs": [{"keg_id": keg_id, "volume_taken": "18"}],
        }
    )
    return keg_id, result["fills"][0]["id"]


class TestCreateKeg:
    """Tests for create_keg."""

    def test_nominal_capacity_from_type(self, test_db, audit_events):
        keg = keg_service.create_keg("K-100", KegType.SANKE_30L, actor="cellar")

        assert keg["capacity_liters"] == Decimal("30")
        assert keg["status"] == KegStatus.AVAILABLE
        assert keg["condition"] == KegCondition.GOOD
        assert keg["current_location"] == "cellar"
        assert [(event.table_name, event.operation) for event in audit_events] == [
            ("kegs", "create")
        ]

    def test_other_requires_capacity(self, test_db):
        with pytest.raises(ValidationError, match="capacity is required"):
            keg_service.create_keg("K-100")

    def test_explicit_capacity_in_gallons(self, test_db):
        keg = keg_service.create_keg("K-100", "other", capacity="5", capacity_unit="gal")
        assert keg["capacity_liters"] == Decimal("18.92705892")

    def test_invalid_fields(self, test_db):
        with pytest.raises(ValidationError) as exc_info:
            keg_service.create_keg(" ", "growler", capacity="-1", condition="shiny")
        assert exc_info.value.errors == [
            "keg_number is required",
            "Unknown keg type: 'growler'",
            "Unknown keg condition: 'shiny'",
            "capacity must be greater than 0",
        ]

    def test_duplicate_number_even_when_retired(self, test_db):
        keg = keg_service.create_keg("K-100", KegType.SANKE_20L)
        keg_service.retire_keg(keg["id"], reason="dented")

        with pytest.raises(ConflictError, match="already exists"):
            keg_service.create_keg("K-100", KegType.SANKE_20L)


class TestUpdateKeg:
    def test_update(self, make_keg):
        keg_id = make_keg()
        keg = keg_service.update_keg(keg_id, condition="needs_repair", current_location="Bay 2")
        assert keg["condition"] == KegCondition.NEEDS_REPAIR
        assert keg["current_location"] == "Bay 2"

    def test_status_not_updatable(self, make_keg):
        with pytest.raises(ValidationError, match="Cannot update field"):
            keg_service.update_keg(make_keg(), status=KegStatus.RETIRED)

    def test_capacity_not_below_active_fill(self, filled_keg):
        keg_id, _ = filled_keg
        with pytest.raises(ValidationError, match="below the 18 L"):
            keg_service.update_keg(keg_id, capacity="15")

    def test_number_conflict(self, make_keg):
        first = make_keg()
        make_keg()
        with pytest.raises(ConflictError):
            keg_service.update_keg(first, keg_number="K-002")


class TestRetireKeg:
    def test_retire(self, make_keg, db_session):
        keg_id = make_keg()

        assert keg_service.retire_keg(keg_id, reason="cracked") is True

        keg = db_session.get(Keg, keg_id)
        assert keg.status == KegStatus.RETIRED
        assert keg.condition == KegCondition.RETIRED
        assert keg.deleted_at is not None
        with pytest.raises(KegNotFound):
            keg_service.get_keg(keg_id)

    def test_active_fill_blocks_retirement(self, filled_keg):
        keg_id, fill_id = filled_keg
        with pytest.raises(InUseError, match=f"fill {fill_id} is filled"):
            keg_service.retire_keg(keg_id)


class TestCleanKeg:
    def test_cleaning_to_available(self, make_keg):
        keg_id = make_keg(status=KegStatus.CLEANING)
        assert keg_service.clean_keg(keg_id)["status"] == KegStatus.AVAILABLE

    def test_requires_cleaning(self, make_keg):
        with pytest.raises(InvalidStateTransition, match="must be cleaning"):
            keg_service.clean_keg(make_keg())


class TestGetActiveFill:
    def test_none_for_empty_keg(self, make_keg):
        assert keg_service.get_active_fill(make_keg()) is None

    def test_active_fill(self, filled_keg):
        keg_id, fill_id = filled_keg
        assert keg_service.get_active_fill(keg_id)["id"] == fill_id

    def test_missing_keg(self, test_db):
        with pytest.raises(KegNotFound):
            keg_service.get_active_fill(404)
