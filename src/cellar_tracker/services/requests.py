"""Typed request structs for mutating ledger operations.

Each request is a dataclass validated in __post_init__: ids must be
positive integers, volumes positive (loss non-negative), enum fields
members of their enum, required strings non-blank, lists non-empty and
free of duplicate ids. Numeric fields are coerced to Decimal (floats go
through str() so 0.1 stays 0.1). Every problem found is collected and
raised together as one ValidationError.

Example:
    >>> TransferRequest(source_vessel_id=1, dest_vessel_id=2, volume="150", loss="5")
    TransferRequest(source_vessel_id=1, dest_vessel_id=2, volume=Decimal('150'), ...)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from cellar_tracker.models.enums import BatchStage, DistributionChannel
from cellar_tracker.utils.constants import (
    DEFAULT_KEG_LOCATION,
    MAX_NAME_LENGTH,
    MAX_NOTES_LENGTH,
    MAX_REASON_LENGTH,
)

from .exceptions import ValidationError
from .unit_converter import is_known_unit


# ============================================================================
# Field checks
# ============================================================================


def _decimal(value: Any, name: str, errors: List[str]) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        errors.append(f"{name} is required and must be a number")
        return None
    try:
        result = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        errors.append(f"{name} must be a number, got {value!r}")
        return None
    if not result.is_finite():
        errors.append(f"{name} must be finite")
        return None
    return result


def _positive(value: Any, name: str, errors: List[str]) -> Optional[Decimal]:
    result = _decimal(value, name, errors)
    if result is not None and result <= 0:
        errors.append(f"{name} must be greater than 0")
    return result


def _non_negative(value: Any, name: str, errors: List[str]) -> Optional[Decimal]:
    result = _decimal(value, name, errors)
    if result is not None and result < 0:
        errors.append(f"{name} cannot be negative")
    return result


def _check_id(value: Any, name: str, errors: List[str]) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        errors.append(f"{name} must be a positive integer")


def _required_text(value: Any, name: str, errors: List[str], max_length: int) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{name} is required")
        return None
    value = value.strip()
    if len(value) > max_length:
        errors.append(f"{name} must be at most {max_length} characters")
    return value


def _optional_text(value: Any, name: str, errors: List[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"{name} must be text")
        return None
    value = value.strip()
    if len(value) > max_length:
        errors.append(f"{name} must be at most {max_length} characters")
    return value or None


def _enum(value: Any, enum_cls, name: str, errors: List[str]):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        errors.append(f"{name} must be one of: {allowed}")
        return value


def _optional_unit(value: Any, name: str, errors: List[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not is_known_unit(value):
        errors.append(f"{name} {value!r} is not a known unit")
    return value


def _nested(items: Any, item_cls, name: str, errors: List[str]) -> list:
    """Coerce a list of dicts or item_cls instances, collecting nested errors."""
    if not isinstance(items, (list, tuple)):
        errors.append(f"{name} must be a list")
        return []
    result = []
    for index, item in enumerate(items):
        if isinstance(item, item_cls):
            result.append(item)
            continue
        if not isinstance(item, dict):
            errors.append(f"{name}[{index}] must be a {item_cls.__name__} or dict")
            continue
        try:
            result.append(item_cls(**item))
        except ValidationError as e:
            errors.extend(f"{name}[{index}]: {error}" for error in e.errors)
        except TypeError as e:
            errors.append(f"{name}[{index}]: {e}")
    return result


def _no_duplicates(values: List[Any], name: str, errors: List[str]) -> None:
    seen = set()
    duplicates = []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    if duplicates:
        errors.append(f"{name} contains duplicates: {duplicates}")


def _raise_if(errors: List[str]) -> None:
    if errors:
        raise ValidationError(errors)


# ============================================================================
# Transfers
# ============================================================================


@dataclass
class TransferRequest:
    """Move, split or blend liquid from one vessel into another.

    Attributes:
        source_vessel_id: Vessel holding the batch to draw from
        dest_vessel_id: Vessel receiving the liquid
        volume: Liters arriving at the destination
        loss: Liters lost in the process (default 0)
        notes: Optional free text recorded on the transfer
    """

    source_vessel_id: int
    dest_vessel_id: int
    volume: Decimal
    loss: Decimal = Decimal("0")
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.source_vessel_id, "source_vessel_id", errors)
        _check_id(self.dest_vessel_id, "dest_vessel_id", errors)
        if self.source_vessel_id == self.dest_vessel_id:
            errors.append("source and destination vessels must differ")
        self.volume = _positive(self.volume, "volume", errors)
        self.loss = _non_negative(self.loss, "loss", errors)
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        _raise_if(errors)


# ============================================================================
# Keg fills
# ============================================================================


@dataclass
class KegVolume:
    """One keg and the liters to put into it."""

    keg_id: int
    volume_taken: Decimal

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.keg_id, "keg_id", errors)
        self.volume_taken = _positive(self.volume_taken, "volume_taken", errors)
        _raise_if(errors)


@dataclass
class KegMaterial:
    """Packaging drawn from a purchase line by a fill (caps, collars, ...).

    The quantity is split evenly across the fill's kegs. unit defaults to
    the purchase line's own unit.
    """

    purchase_line_item_id: int
    quantity: Decimal
    unit: Optional[str] = None
    material_type: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.purchase_line_item_id, "purchase_line_item_id", errors)
        self.quantity = _positive(self.quantity, "quantity", errors)
        self.unit = _optional_unit(self.unit, "unit", errors)
        self.material_type = _optional_text(self.material_type, "material_type", errors, 50)
        _raise_if(errors)


@dataclass
class FillKegsRequest:
    """Fill one or more kegs from a batch.

    Attributes:
        batch_id: Batch to draw from
        vessel_id: Vessel the batch must be sitting in
        kegs: KegVolume entries (dicts are accepted and coerced)
        loss: Liters lost across the whole fill (default 0)
        materials: Packaging consumed by the fill
        notes: Optional notes copied onto every fill
    """

    batch_id: int
    vessel_id: int
    kegs: List[KegVolume]
    loss: Decimal = Decimal("0")
    materials: List[KegMaterial] = field(default_factory=list)
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.batch_id, "batch_id", errors)
        _check_id(self.vessel_id, "vessel_id", errors)
        self.kegs = _nested(self.kegs, KegVolume, "kegs", errors)
        if not self.kegs and not any(error.startswith("kegs") for error in errors):
            errors.append("kegs must contain at least one keg")
        _no_duplicates([entry.keg_id for entry in self.kegs], "kegs", errors)
        self.loss = _non_negative(self.loss, "loss", errors)
        self.materials = _nested(self.materials or [], KegMaterial, "materials", errors)
        _no_duplicates(
            [material.purchase_line_item_id for material in self.materials], "materials", errors
        )
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        _raise_if(errors)

    @property
    def total_volume(self) -> Decimal:
        return sum((entry.volume_taken for entry in self.kegs), Decimal("0"))


@dataclass
class DistributeRequest:
    """Send filled kegs out to a customer location."""

    location: str
    channel: Optional[DistributionChannel] = None
    distributed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        self.location = _required_text(self.location, "location", errors, MAX_NAME_LENGTH)
        if self.channel is not None:
            self.channel = _enum(self.channel, DistributionChannel, "channel", errors)
        if self.distributed_at is not None and not isinstance(self.distributed_at, datetime):
            errors.append("distributed_at must be a datetime")
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        _raise_if(errors)


@dataclass
class ReturnRequest:
    """Record kegs coming back empty."""

    returned_at: Optional[datetime] = None
    location: str = DEFAULT_KEG_LOCATION
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        if self.returned_at is not None and not isinstance(self.returned_at, datetime):
            errors.append("returned_at must be a datetime")
        self.location = _required_text(self.location, "location", errors, MAX_NAME_LENGTH)
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        _raise_if(errors)


@dataclass
class VoidRequest:
    """Undo a mistaken fill; the reason is mandatory."""

    reason: str

    def __post_init__(self) -> None:
        errors: List[str] = []
        self.reason = _required_text(self.reason, "reason", errors, MAX_REASON_LENGTH)
        _raise_if(errors)


# ============================================================================
# Production runs
# ============================================================================


@dataclass
class ProductionLoad:
    """Material drawn from one purchase line into a production run."""

    purchase_line_item_id: int
    quantity: Decimal
    unit: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.purchase_line_item_id, "purchase_line_item_id", errors)
        self.quantity = _positive(self.quantity, "quantity", errors)
        self.unit = _optional_unit(self.unit, "unit", errors)
        _raise_if(errors)


@dataclass
class VesselAssignment:
    """Part of a production run's yield going into one vessel."""

    vessel_id: int
    volume: Decimal
    batch_name: Optional[str] = None
    stage: BatchStage = BatchStage.FERMENTING

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.vessel_id, "vessel_id", errors)
        self.volume = _positive(self.volume, "volume", errors)
        self.batch_name = _optional_text(self.batch_name, "batch_name", errors, MAX_NAME_LENGTH)
        self.stage = _enum(self.stage, BatchStage, "stage", errors)
        _raise_if(errors)


@dataclass
class StartProductionRunRequest:
    """Open a production run, drawing its loads from purchase lines."""

    run_number: str
    loads: List[ProductionLoad]
    notes: Optional[str] = None
    started_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        self.run_number = _required_text(self.run_number, "run_number", errors, 50)
        self.loads = _nested(self.loads, ProductionLoad, "loads", errors)
        if not self.loads and not any(error.startswith("loads") for error in errors):
            errors.append("loads must contain at least one load")
        _no_duplicates([load.purchase_line_item_id for load in self.loads], "loads", errors)
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        if self.started_at is not None and not isinstance(self.started_at, datetime):
            errors.append("started_at must be a datetime")
        _raise_if(errors)


@dataclass
class CompleteProductionRunRequest:
    """Record a run's yield and place it into vessels as new batches."""

    run_id: int
    yield_volume: Decimal
    assignments: List[VesselAssignment]
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        errors: List[str] = []
        _check_id(self.run_id, "run_id", errors)
        self.yield_volume = _positive(self.yield_volume, "yield_volume", errors)
        self.assignments = _nested(self.assignments, VesselAssignment, "assignments", errors)
        if not self.assignments and not any(error.startswith("assignments") for error in errors):
            errors.append("assignments must contain at least one vessel")
        _no_duplicates(
            [assignment.vessel_id for assignment in self.assignments], "assignments", errors
        )
        self.notes = _optional_text(self.notes, "notes", errors, MAX_NOTES_LENGTH)
        _raise_if(errors)

    @property
    def assigned_volume(self) -> Decimal:
        return sum((assignment.volume for assignment in self.assignments), Decimal("0"))
