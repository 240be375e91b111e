"""Tests for service exception codes and payloads."""

from decimal import Decimal

from cellar_tracker.models.enums import KegFillStatus
from cellar_tracker.services.exceptions import (
    BatchClosedError,
    ConcurrentModificationError,
    ConflictError,
    ExceedsAvailableVolume,
    ExceedsVesselCapacity,
    InsufficientBatchVolume,
    InvalidStateTransition,
    NoActiveBatch,
    NotFoundError,
    ServiceError,
    ValidationError,
    VesselNotFound,
)


class TestErrorHierarchy:
    def test_codes_are_stable(self):
        assert VesselNotFound(1).code == "NOT_FOUND"
        assert NoActiveBatch(1).code == "NO_ACTIVE_BATCH"
        assert ConcurrentModificationError().code == "CONCURRENT_MODIFICATION"

    def test_subclassing(self):
        assert isinstance(NoActiveBatch(1), NotFoundError)
        shortfall = InsufficientBatchVolume(1, Decimal("2"), Decimal("1"))
        assert isinstance(shortfall, ExceedsAvailableVolume)
        assert isinstance(ConcurrentModificationError(), ConflictError)
        assert isinstance(BatchClosedError(1, "completed"), InvalidStateTransition)
        assert isinstance(ValidationError(["x"]), ServiceError)


class TestToDict:
    def test_not_found(self):
        assert VesselNotFound(12).to_dict() == {
            "code": "NOT_FOUND",
            "message": "Vessel with ID 12 not found",
            "entity": "Vessel",
            "entity_id": 12,
        }

    def test_decimals_become_strings(self):
        data = ExceedsVesselCapacity(3, Decimal("550"), Decimal("500")).to_dict()
        assert data["resulting_volume"] == "550"
        assert data["capacity"] == "500"
        assert data["code"] == "EXCEEDS_VESSEL_CAPACITY"

    def test_state_transition_uses_enum_values(self):
        error = InvalidStateTransition(
            "keg fill", 7, [KegFillStatus.DISTRIBUTED], KegFillStatus.RETURNED
        )
        assert str(error) == "Keg fill 7 must be distributed, but is returned"
        assert error.to_dict()["required"] == ["distributed"]
        assert error.to_dict()["actual"] == "returned"

    def test_single_required_status(self):
        error = InvalidStateTransition("vessel", 1, KegFillStatus.READY, "filled")
        assert error.required == ["ready"]

    def test_validation_errors_listed(self):
        error = ValidationError(["a is required", "b must be text"])
        assert str(error) == "Validation failed: a is required; b must be text"
        assert error.to_dict()["errors"] == ["a is required", "b must be text"]

    def test_insufficient_batch_volume_details(self):
        data = InsufficientBatchVolume(45, Decimal("62"), Decimal("61")).to_dict()
        assert data["batch_id"] == 45
        assert data["requested"] == "62"
        assert data["available"] == "61"
