"""Tests for composition ledger arithmetic.

Tests cover:
- scale_composition keeps fractions and scales volume and cost
- residue folding onto the largest row
- merge_compositions combining rows with the same provenance key
- normalize_fractions summing to exactly 1
- allocate_composition from weighted inputs
"""

from decimal import Decimal

import pytest

from cellar_tracker.models.enums import CompositionSourceType
from cellar_tracker.services.composition import (
    AllocationInput,
    CompositionShare,
    allocate_composition,
    fraction_total,
    is_balanced,
    merge_compositions,
    normalize_fractions,
    recompute_fractions,
    scale_composition,
    volume_total,
)

JUICE = CompositionSourceType.JUICE_PURCHASE
FRUIT = CompositionSourceType.BASE_FRUIT


def share(source_id, volume, fraction, cost=None, lot_code=None, source_type=JUICE):
    return CompositionShare(
        source_type=source_type,
        source_id=source_id,
        vendor_id="vendor-1",
        lot_code=lot_code or f"LOT-{source_id}",
        volume=Decimal(volume),
        fraction=Decimal(fraction),
        material_cost=Decimal(cost) if cost is not None else None,
    )


class TestScaleComposition:
    """Tests for scale_composition."""

    def test_fractions_unchanged(self):
        """Scaling changes volumes, never fractions."""
        rows = [share(1, "300", "0.75"), share(2, "100", "0.25")]

        scaled = scale_composition(rows, Decimal("150") / Decimal("400"))

        assert [row.fraction for row in scaled] == [Decimal("0.75"), Decimal("0.25")]
        assert [row.volume for row in scaled] == [Decimal("112.5000"), Decimal("37.5000")]

    def test_cost_scales_with_volume(self):
        rows = [share(1, "400", "1", cost="800")]

        scaled = scale_composition(rows, Decimal("0.25"))

        assert scaled[0].material_cost == Decimal("200.0000")

    def test_missing_cost_stays_missing(self):
        scaled = scale_composition([share(1, "400", "1")], Decimal("0.5"))
        assert scaled[0].material_cost is None

    def test_input_untouched(self):
        """scale_composition is side-effect free."""
        rows = [share(1, "400", "1")]
        scale_composition(rows, Decimal("0.5"))
        assert rows[0].volume == Decimal("400")

    def test_total_absorbs_rounding_residue(self):
        """With total, volumes sum to exactly the target."""
        rows = [
            share(1, "1", "0.33333333"),
            share(2, "1", "0.33333333"),
            share(3, "1", "0.33333334"),
        ]

        scaled = scale_composition(rows, Decimal("10") / Decimal("3"), total=Decimal("10"))

        assert volume_total(scaled) == Decimal("10")

    def test_zero_ratio(self):
        scaled = scale_composition([share(1, "400", "1")], Decimal("0"), total=Decimal("0"))
        assert scaled[0].volume == Decimal("0")
        assert scaled[0].fraction == Decimal("1")

    def test_negative_ratio_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            scale_composition([share(1, "400", "1")], Decimal("-1"))

    def test_empty_rows(self):
        assert scale_composition([], Decimal("0.5"), total=Decimal("10")) == []


class TestMergeCompositions:
    """Tests for merge_compositions."""

    def test_same_source_rows_combine(self):
        """Rows with the same provenance key merge into one."""
        dest = [share(1, "250", "1", cost="500")]
        incoming = [share(1, "50", "1", cost="100")]

        merged = merge_compositions(dest, incoming, Decimal("300"))

        assert len(merged) == 1
        assert merged[0].volume == Decimal("300")
        assert merged[0].material_cost == Decimal("600")
        assert merged[0].fraction == Decimal("1")

    def test_fractions_recomputed_against_new_total(self):
        dest = [share(1, "200", "1")]
        incoming = [share(2, "100", "0.5"), share(3, "100", "0.5")]

        merged = merge_compositions(dest, incoming, Decimal("400"))

        fractions = {row.source_id: row.fraction for row in merged}
        assert fractions == {1: Decimal("0.5"), 2: Decimal("0.25"), 3: Decimal("0.25")}
        assert fraction_total(merged) == Decimal("1")

    def test_destination_rows_first(self):
        merged = merge_compositions([share(5, "10", "1")], [share(2, "10", "1")], Decimal("20"))
        assert [row.source_id for row in merged] == [5, 2]

    def test_different_lot_codes_stay_separate(self):
        merged = merge_compositions(
            [share(1, "10", "1", lot_code="A")],
            [share(1, "10", "1", lot_code="B")],
            Decimal("20"),
        )
        assert len(merged) == 2

    def test_cost_with_one_side_missing(self):
        merged = merge_compositions(
            [share(1, "10", "1", cost="5")], [share(1, "10", "1")], Decimal("20")
        )
        assert merged[0].material_cost == Decimal("5")


class TestNormalizeFractions:
    """Tests for normalize_fractions and recompute_fractions."""

    def test_thirds_sum_to_exactly_one(self):
        rows = recompute_fractions(
            [share(1, "1", "0"), share(2, "1", "0"), share(3, "1", "0")], Decimal("3")
        )
        assert fraction_total(rows) == Decimal("1")

    def test_residue_goes_to_largest_row(self):
        """Ties on size go to the earliest row."""
        third = Decimal(1) / Decimal(3)
        rows = [share(1, "1", third), share(2, "1", third), share(3, "1", third)]

        normalized = normalize_fractions(rows)

        assert [row.fraction for row in normalized] == [
            Decimal("0.33333334"),
            Decimal("0.33333333"),
            Decimal("0.33333333"),
        ]

    def test_empty(self):
        assert normalize_fractions([]) == []

    def test_recompute_rejects_zero_total(self):
        with pytest.raises(ValueError):
            recompute_fractions([share(1, "1", "1")], Decimal("0"))


class TestIsBalanced:
    """Tests for is_balanced."""

    def test_balanced(self):
        rows = [share(1, "1", "0.5"), share(2, "1", "0.5")]
        assert is_balanced(rows, Decimal("0.000001"))

    def test_unbalanced(self):
        rows = [share(1, "1", "0.5"), share(2, "1", "0.4")]
        assert not is_balanced(rows, Decimal("0.000001"))

    def test_empty_is_not_balanced(self):
        assert not is_balanced([], Decimal("0.000001"))


class TestAllocateComposition:
    """Tests for allocate_composition."""

    def test_volumes_follow_weights(self):
        inputs = [
            AllocationInput(FRUIT, 1, "v", "A", Decimal("300")),
            AllocationInput(FRUIT, 2, "v", "B", Decimal("100")),
        ]

        rows = allocate_composition(inputs, Decimal("200"))

        assert [row.volume for row in rows] == [Decimal("150.0000"), Decimal("50.0000")]
        assert [row.fraction for row in rows] == [Decimal("0.75"), Decimal("0.25")]

    def test_volumes_and_fractions_exact(self):
        inputs = [AllocationInput(JUICE, i, "v", None, Decimal("1")) for i in range(1, 4)]

        rows = allocate_composition(inputs, Decimal("100"))

        assert volume_total(rows) == Decimal("100")
        assert fraction_total(rows) == Decimal("1")

    def test_cost_carried(self):
        rows = allocate_composition(
            [AllocationInput(JUICE, 1, "v", None, Decimal("1"), material_cost=Decimal("12.5"))],
            Decimal("10"),
        )
        assert rows[0].material_cost == Decimal("12.5000")

    def test_requires_inputs(self):
        with pytest.raises(ValueError, match="At least one"):
            allocate_composition([], Decimal("10"))

    def test_requires_positive_weight(self):
        with pytest.raises(ValueError, match="more than zero"):
            allocate_composition([AllocationInput(JUICE, 1, "v", None, Decimal("0"))], Decimal("1"))


class TestCompositionShareKey:
    def test_key_ignores_quantities(self):
        assert share(1, "10", "1").key == share(1, "99", "0.2").key

    def test_key_includes_source_type(self):
        assert share(1, "1", "1").key != share(1, "1", "1", source_type=FRUIT).key
