"""Service layer exception classes for Cellar Tracker.

Every ledger failure is a ServiceError carrying a stable machine-readable
``code`` plus a human message. Callers surface the message and branch on
the code (or the class) for retry and compensating actions.

Exception Hierarchy:
    ServiceError (base)
    ├── NotFoundError                      NOT_FOUND
    │   ├── VesselNotFound
    │   ├── BatchNotFound
    │   ├── KegNotFound
    │   ├── KegFillNotFound
    │   ├── PurchaseLineItemNotFound
    │   ├── ProductionRunNotFound
    │   └── NoActiveBatch                  NO_ACTIVE_BATCH
    ├── InvalidStateTransition             INVALID_STATE_TRANSITION
    │   ├── VesselNotAvailable             VESSEL_NOT_AVAILABLE
    │   ├── KegNotAvailable                KEG_NOT_AVAILABLE
    │   └── BatchClosedError               BATCH_CLOSED
    ├── QuantityError                      QUANTITY_ERROR
    │   ├── ExceedsAvailableVolume         EXCEEDS_AVAILABLE_VOLUME
    │   │   └── InsufficientBatchVolume    INSUFFICIENT_BATCH_VOLUME
    │   ├── ExceedsVesselCapacity          EXCEEDS_VESSEL_CAPACITY
    │   ├── ExceedsKegCapacity             EXCEEDS_KEG_CAPACITY
    │   └── InsufficientQuantity           INSUFFICIENT_QUANTITY
    ├── ConflictError                      CONFLICT
    │   └── ConcurrentModificationError    CONCURRENT_MODIFICATION
    ├── ImmutableRecordError               IMMUTABLE_RECORD
    ├── ValidationError                    VALIDATION_ERROR
    └── InUseError                         IN_USE
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class.

    Attributes:
        code: Stable error kind
        message: Human-readable description
        details: Extra fields copied into to_dict()
    """

    code = "SERVICE_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-safe description: {"code", "message", **details}."""
        result = {"code": self.code, "message": self.message}
        for key, value in self.details.items():
            result[key] = _jsonable(value)
        return result


# ============================================================================
# Not found
# ============================================================================


class NotFoundError(ServiceError):
    """Raised when an entity is absent or soft-deleted."""

    code = "NOT_FOUND"
    entity = "Record"

    def __init__(self, entity_id: Any, message: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(
            message or f"{self.entity} with ID {entity_id} not found",
            entity=self.entity,
            entity_id=entity_id,
        )


class VesselNotFound(NotFoundError):
    """Raised when a vessel cannot be found by ID.

    Example:
        >>> raise VesselNotFound(12)
        VesselNotFound: Vessel with ID 12 not found
    """

    entity = "Vessel"


class BatchNotFound(NotFoundError):
    entity = "Batch"


class KegNotFound(NotFoundError):
    entity = "Keg"


class KegFillNotFound(NotFoundError):
    entity = "Keg fill"


class PurchaseLineItemNotFound(NotFoundError):
    entity = "Purchase line item"


class ProductionRunNotFound(NotFoundError):
    entity = "Production run"


class NoActiveBatch(NotFoundError):
    """Raised when a vessel holds no active batch to draw from."""

    code = "NO_ACTIVE_BATCH"
    entity = "Active batch"

    def __init__(self, vessel_id: int):
        self.vessel_id = vessel_id
        super().__init__(vessel_id, f"Vessel {vessel_id} holds no active batch")


# ============================================================================
# State transitions
# ============================================================================


class InvalidStateTransition(ServiceError):
    """Raised when a status precondition fails.

    Args:
        entity: Kind of record ("keg fill", "vessel", ...)
        entity_id: Record ID
        required: Status or statuses the operation needs
        actual: Status the record is actually in

    Example:
        >>> raise InvalidStateTransition("keg fill", 7, ["distributed"], "returned")
        InvalidStateTransition: Keg fill 7 must be distributed, but is returned
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        entity: str,
        entity_id: Any,
        required: Iterable[Any],
        actual: Any,
        message: Optional[str] = None,
    ):
        if isinstance(required, (str, bytes)) or hasattr(required, "value"):
            required = [required]
        self.entity = entity
        self.entity_id = entity_id
        self.required = [_jsonable(status) for status in required]
        self.actual = _jsonable(actual)
        if message is None:
            message = (
                f"{entity[:1].upper()}{entity[1:]} {entity_id} must be "
                f"{' or '.join(self.required)}, but is {self.actual}"
            )
        super().__init__(
            message,
            entity=entity,
            entity_id=entity_id,
            required=self.required,
            actual=self.actual,
        )


class VesselNotAvailable(InvalidStateTransition):
    """Raised when a vessel cannot receive liquid in its current status."""

    code = "VESSEL_NOT_AVAILABLE"

    def __init__(self, vessel_id: int, required: Iterable[Any], actual: Any):
        super().__init__("vessel", vessel_id, required, actual)
        self.vessel_id = vessel_id


class KegNotAvailable(InvalidStateTransition):
    """Raised when a keg cannot be filled."""

    code = "KEG_NOT_AVAILABLE"

    def __init__(self, keg_id: int, actual: Any, message: Optional[str] = None):
        super().__init__("keg", keg_id, ["available"], actual, message=message)
        self.keg_id = keg_id


class BatchClosedError(InvalidStateTransition):
    """Raised on any volume or composition change to a closed batch."""

    code = "BATCH_CLOSED"

    def __init__(self, batch_id: int, actual: Any):
        super().__init__(
            "batch",
            batch_id,
            ["active"],
            actual,
            message=f"Batch {batch_id} is {_jsonable(actual)} and closed to further changes",
        )
        self.batch_id = batch_id


# ============================================================================
# Quantities
# ============================================================================


class QuantityError(ServiceError):
    """Base class for volume and quantity invariant violations."""

    code = "QUANTITY_ERROR"


class ExceedsAvailableVolume(QuantityError):
    """Raised when more volume is requested than the source holds.

    Example:
        >>> raise ExceedsAvailableVolume(Decimal("410"), Decimal("400"))
        ExceedsAvailableVolume: Requested 410 L exceeds available 400 L
    """

    code = "EXCEEDS_AVAILABLE_VOLUME"

    def __init__(self, requested: Decimal, available: Decimal, message: Optional[str] = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Requested {requested} L exceeds available {available} L",
            requested=requested,
            available=available,
        )


class InsufficientBatchVolume(ExceedsAvailableVolume):
    """Raised when a keg fill needs more than the batch holds."""

    code = "INSUFFICIENT_BATCH_VOLUME"

    def __init__(self, batch_id: int, requested: Decimal, available: Decimal):
        self.batch_id = batch_id
        super().__init__(
            requested,
            available,
            message=(
                f"Batch {batch_id} holds {available} L, "
                f"but the fill needs {requested} L including loss"
            ),
        )
        self.details["batch_id"] = batch_id


class ExceedsVesselCapacity(QuantityError):
    """Raised when a vessel would hold more than its capacity."""

    code = "EXCEEDS_VESSEL_CAPACITY"

    def __init__(self, vessel_id: int, resulting_volume: Decimal, capacity: Decimal):
        self.vessel_id = vessel_id
        self.resulting_volume = resulting_volume
        self.capacity = capacity
        super().__init__(
            f"Vessel {vessel_id} would hold {resulting_volume} L, "
            f"exceeding its capacity of {capacity} L",
            vessel_id=vessel_id,
            resulting_volume=resulting_volume,
            capacity=capacity,
        )


class ExceedsKegCapacity(QuantityError):
    """Raised when a fill puts more into a keg than it holds."""

    code = "EXCEEDS_KEG_CAPACITY"

    def __init__(self, keg_id: int, volume: Decimal, capacity: Decimal):
        self.keg_id = keg_id
        self.volume = volume
        self.capacity = capacity
        super().__init__(
            f"Keg {keg_id} holds {capacity} L; cannot fill {volume} L",
            keg_id=keg_id,
            volume=volume,
            capacity=capacity,
        )


class InsufficientQuantity(QuantityError):
    """Raised by the depletion gate when a purchase line cannot cover a draw."""

    code = "INSUFFICIENT_QUANTITY"

    def __init__(self, line_item_id: int, requested: Decimal, available: Decimal, unit: str):
        self.line_item_id = line_item_id
        self.requested = requested
        self.available = available
        self.unit = unit
        super().__init__(
            f"Purchase line {line_item_id}: requested {requested} {unit}, "
            f"available {available} {unit}",
            line_item_id=line_item_id,
            requested=requested,
            available=available,
            unit=unit,
        )


# ============================================================================
# Conflicts and integrity
# ============================================================================


class ConflictError(ServiceError):
    """Raised when a unique value is already taken.

    Example:
        >>> raise ConflictError("Keg number 'K-001' already exists", field="keg_number")
    """

    code = "CONFLICT"


class ConcurrentModificationError(ConflictError):
    """Raised when a row changed underneath the current transaction."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str = "Record was modified by another transaction"):
        super().__init__(message)


class ImmutableRecordError(ServiceError):
    """Raised on any attempt to change or remove an immutable record."""

    code = "IMMUTABLE_RECORD"

    def __init__(self, table_name: str, record_id: Any, operation: str):
        self.table_name = table_name
        self.record_id = record_id
        super().__init__(
            f"Cannot {operation} {table_name} record {record_id}: records are immutable",
            table_name=table_name,
            record_id=record_id,
            operation=operation,
        )


class ValidationError(ServiceError):
    """Raised when request data validation fails.

    Args:
        errors: Every problem found, one message per entry
    """

    code = "VALIDATION_ERROR"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors), errors=self.errors)


class InUseError(ServiceError):
    """Raised when deleting a record that still has history or active use."""

    code = "IN_USE"

    def __init__(self, entity: str, entity_id: Any, reason: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"Cannot delete {entity} {entity_id}: {reason}",
            entity=entity,
            entity_id=entity_id,
        )
