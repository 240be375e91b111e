"""Composition ledger arithmetic.

Pure functions over immutable CompositionShare values. A batch's
composition lists which purchased lots its liquid came from, the volume
each contributed and the fraction of the batch that volume represents.

Every volume draw (split, move, keg fill, measured correction) scales the
rows with scale_composition(); fractions are ratios and do not change.
A blend merges two row sets with merge_compositions() and recomputes
every fraction against the new total. normalize_fractions() keeps the
sum of fractions at exactly 1 after rounding.

Nothing here touches the database; models.BatchComposition converts
between rows and shares.
"""

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from cellar_tracker.models.enums import CompositionSourceType
from cellar_tracker.utils.constants import COST_QUANTUM, FRACTION_QUANTUM, VOLUME_QUANTUM

ONE = Decimal("1")
ZERO = Decimal("0")

ProvenanceKey = Tuple[str, Optional[int], Optional[str], Optional[str]]


@dataclass(frozen=True)
class CompositionShare:
    """
    One provenance source of a batch's liquid.

    Attributes:
        source_type: base_fruit or juice_purchase
        source_id: Purchase line the liquid came from
        vendor_id: Vendor reference
        lot_code: Supplier lot code
        volume: Liters of the batch from this source
        fraction: volume / batch volume
        material_cost: Cost of the source material carried in this volume
    """

    source_type: CompositionSourceType
    source_id: Optional[int]
    vendor_id: Optional[str]
    lot_code: Optional[str]
    volume: Decimal
    fraction: Decimal
    material_cost: Optional[Decimal] = None

    @property
    def key(self) -> ProvenanceKey:
        """Rows with the same key describe the same source and merge on blend."""
        return (
            CompositionSourceType(self.source_type).value,
            self.source_id,
            self.vendor_id,
            self.lot_code,
        )


@dataclass(frozen=True)
class AllocationInput:
    """A weighted source for allocate_composition (e.g. one production-run load)."""

    source_type: CompositionSourceType
    source_id: Optional[int]
    vendor_id: Optional[str]
    lot_code: Optional[str]
    weight: Decimal
    material_cost: Optional[Decimal] = None


def _quantize_volume(value: Decimal) -> Decimal:
    return value.quantize(VOLUME_QUANTUM, rounding=ROUND_HALF_EVEN)


def _quantize_cost(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_EVEN)


def _add_costs(first: Optional[Decimal], second: Optional[Decimal]) -> Optional[Decimal]:
    if first is None and second is None:
        return None
    return (first or ZERO) + (second or ZERO)


def _largest_index(rows: Sequence[CompositionShare]) -> int:
    # Ties go to the earliest row so results are deterministic
    best = 0
    for index, row in enumerate(rows):
        if (row.volume, row.fraction) > (rows[best].volume, rows[best].fraction):
            best = index
    return best


def fraction_total(rows: Iterable[CompositionShare]) -> Decimal:
    """Sum of fraction across rows."""
    return sum((Decimal(row.fraction) for row in rows), ZERO)


def volume_total(rows: Iterable[CompositionShare]) -> Decimal:
    return sum((Decimal(row.volume) for row in rows), ZERO)


def is_balanced(rows: Sequence[CompositionShare], tolerance: Decimal) -> bool:
    """True if the rows' fractions sum to 1 within tolerance. Empty rows are not balanced."""
    if not rows:
        return False
    return abs(fraction_total(rows) - ONE) < tolerance


def normalize_fractions(rows: Sequence[CompositionShare]) -> List[CompositionShare]:
    """
    Quantize fractions and fold the rounding residue into the largest row.

    After normalization the fractions sum to exactly 1.

    Args:
        rows: Shares whose fractions are approximately balanced

    Returns:
        New list of shares (input untouched)
    """
    if not rows:
        return []
    quantized = [
        replace(
            row,
            fraction=Decimal(row.fraction).quantize(FRACTION_QUANTUM, rounding=ROUND_HALF_EVEN),
        )
        for row in rows
    ]
    residue = ONE - fraction_total(quantized)
    if residue != 0:
        index = _largest_index(quantized)
        target = quantized[index]
        quantized[index] = replace(target, fraction=target.fraction + residue)
    return quantized


def recompute_fractions(
    rows: Sequence[CompositionShare], total: Decimal
) -> List[CompositionShare]:
    """Set every fraction to volume / total, then normalize."""
    if not rows:
        return []
    if total <= 0:
        raise ValueError(f"Cannot compute fractions against a total of {total}")
    return normalize_fractions([replace(row, fraction=row.volume / total) for row in rows])


def scale_composition(
    rows: Sequence[CompositionShare], ratio: Decimal, total: Optional[Decimal] = None
) -> List[CompositionShare]:
    """
    Scale a composition by a volume ratio.

    Volumes and material costs scale by ratio; fractions are unchanged.
    Used identically by split, move, blend and keg-fill draws.

    Args:
        rows: Source shares
        ratio: New volume / old volume, between 0 and 1 for draws
        total: If given, the rounding residue of the scaled volumes is folded
            into the largest row so the volumes sum to exactly total

    Returns:
        New list of shares (input untouched)

    Raises:
        ValueError: If ratio is negative
    """
    ratio = Decimal(ratio)
    if ratio < 0:
        raise ValueError(f"Scale ratio cannot be negative: {ratio}")

    scaled = [
        replace(
            row,
            volume=_quantize_volume(Decimal(row.volume) * ratio),
            material_cost=_quantize_cost(
                Decimal(row.material_cost) * ratio if row.material_cost is not None else None
            ),
        )
        for row in rows
    ]

    if total is not None and scaled:
        residue = Decimal(total) - volume_total(scaled)
        if residue != 0:
            index = _largest_index(scaled)
            scaled[index] = replace(scaled[index], volume=scaled[index].volume + residue)

    return scaled


def merge_compositions(
    dest_rows: Sequence[CompositionShare],
    incoming_rows: Sequence[CompositionShare],
    new_total: Decimal,
) -> List[CompositionShare]:
    """
    Merge incoming shares into a destination composition.

    Rows with the same provenance key are combined (volumes and costs
    added); every fraction is recomputed as volume / new_total and the
    result normalized.

    Args:
        dest_rows: Destination batch shares before the blend
        incoming_rows: Shares arriving with the transferred volume
            (already scaled to that volume)
        new_total: Destination batch volume after the blend

    Returns:
        Merged shares, destination rows first, then new sources in order
    """
    merged: Dict[ProvenanceKey, CompositionShare] = {}
    for row in list(dest_rows) + list(incoming_rows):
        existing = merged.get(row.key)
        if existing is None:
            merged[row.key] = row
        else:
            merged[row.key] = replace(
                existing,
                volume=existing.volume + row.volume,
                material_cost=_add_costs(existing.material_cost, row.material_cost),
            )
    return recompute_fractions(list(merged.values()), Decimal(new_total))


def allocate_composition(
    inputs: Sequence[AllocationInput], volume: Decimal
) -> List[CompositionShare]:
    """
    Build the initial composition of a new batch from weighted sources.

    Each source gets volume * weight / total_weight liters; the volumes
    sum to exactly volume and the fractions to exactly 1.

    Args:
        inputs: Weighted sources (weights share one unit kind)
        volume: Batch volume in liters

    Raises:
        ValueError: If there are no inputs or the weights do not sum above zero
    """
    if not inputs:
        raise ValueError("At least one composition input is required")
    total_weight = sum((Decimal(item.weight) for item in inputs), ZERO)
    if total_weight <= 0:
        raise ValueError("Composition input weights must sum to more than zero")

    volume = Decimal(volume)
    shares = [
        CompositionShare(
            source_type=CompositionSourceType(item.source_type),
            source_id=item.source_id,
            vendor_id=item.vendor_id,
            lot_code=item.lot_code,
            volume=_quantize_volume(volume * Decimal(item.weight) / total_weight),
            fraction=Decimal(item.weight) / total_weight,
            material_cost=_quantize_cost(item.material_cost),
        )
        for item in inputs
    ]

    residue = volume - volume_total(shares)
    if residue != 0:
        index = _largest_index(shares)
        shares[index] = replace(shares[index], volume=shares[index].volume + residue)

    return normalize_fractions(shares)
