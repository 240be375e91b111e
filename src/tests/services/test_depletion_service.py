"""Tests for the purchase depletion tracker.

Tests cover:
- derive_status for every branch
- Availability from production loads and keg fill materials
- consume() gating and stamping depleted_at
- refresh_depletion after consumption is released
- list_available filtering
"""

from decimal import Decimal

import pytest

from cellar_tracker.models import PurchaseItemType, PurchaseLineItem
from cellar_tracker.models.enums import DepletionStatus
from cellar_tracker.services import depletion_service, production_run_service
from cellar_tracker.services.exceptions import (
    InsufficientQuantity,
    PurchaseLineItemNotFound,
    ValidationError,
)


def _start_run(line_id, quantity, run_number="PR-1", unit=None):
    load = {"purchase_line_item_id": line_id, "quantity": quantity}
    if unit is not None:
        load["unit"] = unit
    return production_run_service.start_production_run(
        {"run_number": run_number, "loads": [load]}, actor="cellar"
    )


class TestDeriveStatus:
    @pytest.mark.parametrize(
        "total,consumed,deleted,expected",
        [
            ("100", "0", False, DepletionStatus.ACTIVE),
            ("100", "40", False, DepletionStatus.PARTIALLY_DEPLETED),
            ("100", "99.995", False, DepletionStatus.DEPLETED),
            ("100", "100", False, DepletionStatus.DEPLETED),
            ("100", "40", True, DepletionStatus.ARCHIVED),
        ],
    )
    def test_branches(self, total, consumed, deleted, expected):
        assert (
            depletion_service.derive_status(Decimal(total), Decimal(consumed), deleted)
            is expected
        )

    def test_explicit_tolerance(self):
        status = depletion_service.derive_status(
            Decimal("100"), Decimal("95"), False, tolerance=Decimal("5")
        )
        assert status is DepletionStatus.DEPLETED


class TestGetAvailability:
    """Tests for get_availability."""

    def test_untouched_line(self, make_line):
        line_id = make_line(quantity="1000")

        availability = depletion_service.get_availability(line_id)

        assert availability["available_quantity"] == Decimal("1000")
        assert availability["consumed_quantity"] == Decimal("0")
        assert availability["available_pct"] == Decimal("100.00")
        assert availability["status"] == "active"

    def test_after_production_load(self, make_line):
        line_id = make_line(quantity="1000")
        _start_run(line_id, "400")

        availability = depletion_service.get_availability(line_id)

        assert availability["available_quantity"] == Decimal("600")
        assert availability["available_pct"] == Decimal("60.00")
        assert availability["status"] == "partially_depleted"

    def test_missing_line(self, test_db):
        with pytest.raises(PurchaseLineItemNotFound):
            depletion_service.get_availability(999)

    def test_soft_deleted_line_hidden(self, make_line, db_session):
        line_id = make_line()
        db_session.get(PurchaseLineItem, line_id).soft_delete()
        db_session.commit()

        with pytest.raises(PurchaseLineItemNotFound):
            depletion_service.get_availability(line_id)


class TestCheckAvailability:
    def test_within_availability(self, make_line):
        line_id = make_line(quantity="500", unit="kg")
        result = depletion_service.check_availability(line_id, Decimal("500"))
        assert result["available_quantity"] == Decimal("500")

    def test_exceeding_availability(self, make_line):
        line_id = make_line(quantity="500", unit="kg")

        with pytest.raises(InsufficientQuantity) as exc_info:
            depletion_service.check_availability(line_id, Decimal("500.5"))

        assert exc_info.value.available == Decimal("500")
        assert exc_info.value.unit == "kg"

    def test_unit_conversion(self, make_line):
        """1200 lb is more than 500 kg."""
        line_id = make_line(quantity="500", unit="kg")
        with pytest.raises(InsufficientQuantity):
            depletion_service.check_availability(line_id, Decimal("1200"), unit="lb")

    def test_incompatible_unit(self, make_line):
        line_id = make_line(quantity="500", unit="kg")
        with pytest.raises(ValidationError, match="incompatible"):
            depletion_service.check_availability(line_id, Decimal("1"), unit="L")

    def test_does_not_record(self, make_line):
        line_id = make_line(quantity="500", unit="kg")
        depletion_service.check_availability(line_id, Decimal("100"))
        assert depletion_service.get_availability(line_id)["consumed_quantity"] == Decimal("0")


class TestConsume:
    """Tests for consume() inside a caller's transaction."""

    def test_returns_quantity_in_line_unit(self, make_line, db_session):
        line_id = make_line(quantity="1000", unit="L")

        quantity = depletion_service.consume(db_session, line_id, Decimal("2"), unit="hl")

        assert quantity == Decimal("200")

    def test_rejects_overdraw(self, make_line, db_session):
        line_id = make_line(quantity="10", unit="L")
        with pytest.raises(InsufficientQuantity):
            depletion_service.consume(db_session, line_id, Decimal("10.01"))

    def test_depleting_draw_stamps_line(self, make_line, db_session):
        line_id = make_line(quantity="300", unit="L")

        _start_run(line_id, "300")

        line = db_session.get(PurchaseLineItem, line_id)
        assert line.depleted_at is not None
        assert depletion_service.get_availability(line_id)["status"] == "depleted"

    def test_partial_draw_leaves_line_open(self, make_line, db_session):
        line_id = make_line(quantity="300", unit="L")
        _start_run(line_id, "100")
        assert db_session.get(PurchaseLineItem, line_id).depleted_at is None

    def test_second_draw_sees_first(self, make_line):
        line_id = make_line(quantity="300", unit="L")
        _start_run(line_id, "200", run_number="PR-1")

        with pytest.raises(InsufficientQuantity):
            _start_run(line_id, "150", run_number="PR-2")


class TestRefreshDepletion:
    def test_cancel_restores_availability(self, make_line, db_session):
        line_id = make_line(quantity="300", unit="L")
        run = _start_run(line_id, "300")

        production_run_service.cancel_production_run(run["id"], reason="press broke")

        line = db_session.get(PurchaseLineItem, line_id)
        assert line.depleted_at is None
        availability = depletion_service.get_availability(line_id)
        assert availability["available_quantity"] == Decimal("300")
        assert availability["status"] == "active"


class TestListAvailable:
    def test_filters_type_and_exhausted(self, make_line):
        juice_id = make_line(quantity="100")
        fruit_id = make_line(item_type=PurchaseItemType.BASE_FRUIT, quantity="50", unit="kg")
        empty_id = make_line(quantity="20")
        _start_run(empty_id, "20")

        all_ids = [row["line_item_id"] for row in depletion_service.list_available()]
        juice_ids = [
            row["line_item_id"]
            for row in depletion_service.list_available(PurchaseItemType.JUICE)
        ]

        assert all_ids == [juice_id, fruit_id]
        assert juice_ids == [juice_id]
