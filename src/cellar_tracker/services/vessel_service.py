"""
Vessel Service - holding tank lifecycle.

This module provides:
- Vessel CRUD (create, get, update, delete when never used)
- The vessel status state machine (transition_vessel, change_vessel_status)
- Cleaning and purging

Status transitions are checked against models.enums.VESSEL_TRANSITIONS.
A vessel holding an active batch stays in an occupied status
(fermenting, occupied, aging) until the batch leaves or closes; it then
goes to cleaning and only mark_vessel_clean() returns it to available.
"""

from contextlib import nullcontext
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from cellar_tracker.models import (
    Batch,
    BatchStage,
    BatchStatus,
    BatchTransfer,
    KegFill,
    OCCUPIED_VESSEL_STATUSES,
    VESSEL_TRANSITIONS,
    Vessel,
    VesselStatus,
)
from cellar_tracker.utils.constants import LEDGER_VOLUME_UNIT, MAX_NAME_LENGTH
from cellar_tracker.utils.datetime_utils import utc_now

from . import audit_service
from .database import flush, session_scope
from .exceptions import (
    ConflictError,
    ExceedsVesselCapacity,
    InUseError,
    InvalidStateTransition,
    NoActiveBatch,
    ServiceError,
    ValidationError,
    VesselNotFound,
)
from .logging_utils import get_service_logger, log_operation, log_rejection
from .unit_converter import is_volume_unit, to_liters

logger = get_service_logger(__name__)

UPDATABLE_FIELDS = {"name", "capacity", "capacity_unit", "material", "location", "notes"}

_STAGE_FOR_STATUS = {
    VesselStatus.FERMENTING: BatchStage.FERMENTING,
    VesselStatus.AGING: BatchStage.AGING,
    VesselStatus.OCCUPIED: BatchStage.CONDITIONING,
}


# ============================================================================
# Lookups shared with the other ledger services
# ============================================================================


def load_vessel(session: Session, vessel_id: int, lock: bool = False) -> Vessel:
    """Fetch a live vessel, optionally locking the row.

    Raises:
        VesselNotFound: If the vessel is absent or soft-deleted
    """
    query = session.query(Vessel).filter(Vessel.id == vessel_id, Vessel.not_deleted())
    if lock:
        query = query.with_for_update()
    vessel = query.first()
    if vessel is None:
        raise VesselNotFound(vessel_id)
    return vessel


def find_active_batch(session: Session, vessel_id: int, lock: bool = False) -> Optional[Batch]:
    """The active batch occupying a vessel, or None."""
    query = session.query(Batch).filter(
        Batch.vessel_id == vessel_id,
        Batch.status == BatchStatus.ACTIVE,
        Batch.not_deleted(),
    )
    if lock:
        query = query.with_for_update()
    return query.order_by(Batch.id).first()


def transition_vessel(vessel: Vessel, new_status: VesselStatus) -> VesselStatus:
    """
    Move a vessel to a new status if the state machine allows it.

    Entering an occupied status is only legal from available (an empty,
    clean vessel); moving between occupied statuses is allowed while the
    vessel holds its batch.

    Returns:
        The previous status

    Raises:
        InvalidStateTransition: If the transition is not in VESSEL_TRANSITIONS
    """
    current = VesselStatus(vessel.status)
    new_status = VesselStatus(new_status)
    if current == new_status:
        return current
    if new_status not in VESSEL_TRANSITIONS[current]:
        required = sorted(
            status.value for status, targets in VESSEL_TRANSITIONS.items() if new_status in targets
        )
        raise InvalidStateTransition(
            "vessel",
            vessel.id,
            required,
            current,
            message=f"Vessel {vessel.id} cannot go from {current.value} to {new_status.value}",
        )
    vessel.status = new_status
    return current


def capacity_liters(vessel: Vessel) -> Decimal:
    return to_liters(vessel.capacity, vessel.capacity_unit)


def vessel_to_dict(vessel: Vessel) -> Dict[str, Any]:
    result = vessel.to_dict()
    result["capacity_liters"] = capacity_liters(vessel)
    return result


def _validate_fields(data: Dict[str, Any], errors: list) -> None:
    if "name" in data:
        name = data["name"]
        if not isinstance(name, str) or not name.strip():
            errors.append("name is required")
        elif len(name.strip()) > MAX_NAME_LENGTH:
            errors.append(f"name must be at most {MAX_NAME_LENGTH} characters")
        else:
            data["name"] = name.strip()
    if "capacity" in data:
        try:
            capacity = Decimal(str(data["capacity"]))
        except (InvalidOperation, ValueError):
            errors.append("capacity must be a number")
        else:
            if not capacity.is_finite() or capacity <= 0:
                errors.append("capacity must be greater than 0")
            data["capacity"] = capacity
    if "capacity_unit" in data and not is_volume_unit(str(data["capacity_unit"])):
        errors.append(f"capacity_unit {data['capacity_unit']!r} is not a volume unit")


def _check_name_free(session: Session, name: str, exclude_id: Optional[int] = None) -> None:
    query = session.query(Vessel.id).filter(Vessel.name == name, Vessel.not_deleted())
    if exclude_id is not None:
        query = query.filter(Vessel.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"Vessel name '{name}' already exists", field="name", value=name)


# ============================================================================
# CRUD
# ============================================================================


def create_vessel(
    name: str,
    capacity: Decimal,
    capacity_unit: str = LEDGER_VOLUME_UNIT,
    material: Optional[str] = None,
    location: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Create a new, available vessel.

    Args:
        name: Unique vessel name (required)
        capacity: Working capacity, greater than 0
        capacity_unit: Volume unit of capacity (default L)
        material: Construction material (optional)
        location: Where the vessel stands (optional)
        notes: Additional notes (optional)
        actor: Who created the vessel
        session: Optional database session for transactional atomicity

    Returns:
        Created vessel as dictionary

    Raises:
        ValidationError: If name, capacity or unit are invalid
        ConflictError: If another live vessel has the same name

    Example:
        >>> vessel = create_vessel("Tank 1", Decimal("500"))
        >>> vessel["status"]
        'available'
    """
    if session is not None:
        return _create_vessel_impl(
            name, capacity, capacity_unit, material, location, notes, actor, session
        )
    with session_scope() as session:
        return _create_vessel_impl(
            name, capacity, capacity_unit, material, location, notes, actor, session
        )


def _create_vessel_impl(name, capacity, capacity_unit, material, location, notes, actor, session):
    data = {"name": name, "capacity": capacity, "capacity_unit": capacity_unit}
    errors: list = []
    _validate_fields(data, errors)
    if errors:
        raise ValidationError(errors)
    _check_name_free(session, data["name"])

    vessel = Vessel(
        name=data["name"],
        capacity=data["capacity"],
        capacity_unit=capacity_unit,
        status=VesselStatus.AVAILABLE,
        material=material,
        location=location,
        notes=notes,
    )
    session.add(vessel)
    flush(session)

    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="vessels",
            record_id=vessel.id,
            operation="create",
            new_data=audit_service.snapshot(vessel),
            actor=actor,
        ),
    )
    log_operation(logger, "create_vessel", "success", vessel_id=vessel.id)
    return vessel_to_dict(vessel)


def get_vessel(vessel_id: int, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get a vessel by ID.

    Raises:
        VesselNotFound: If the vessel is absent or soft-deleted
    """
    if session is not None:
        return vessel_to_dict(load_vessel(session, vessel_id))
    with session_scope() as session:
        return vessel_to_dict(load_vessel(session, vessel_id))


def update_vessel(
    vessel_id: int,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
    **kwargs,
) -> Dict[str, Any]:
    """Update vessel attributes.

    Args:
        vessel_id: Vessel ID
        actor: Who made the change
        session: Optional database session
        **kwargs: Fields to update (name, capacity, capacity_unit, material,
            location, notes). Status changes go through change_vessel_status().

    Returns:
        Updated vessel as dictionary

    Raises:
        VesselNotFound: If the vessel does not exist
        ValidationError: If a field is invalid or unknown
        ConflictError: If the new name is taken
        ExceedsVesselCapacity: If the new capacity is below the occupying batch volume
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        unknown = sorted(set(kwargs) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError([f"Cannot update field(s): {', '.join(unknown)}"])

        vessel = load_vessel(session, vessel_id, lock=True)
        data = dict(kwargs)
        errors: list = []
        _validate_fields(data, errors)
        if errors:
            raise ValidationError(errors)
        if "name" in data:
            _check_name_free(session, data["name"], exclude_id=vessel.id)

        new_capacity = to_liters(
            data.get("capacity", vessel.capacity), data.get("capacity_unit", vessel.capacity_unit)
        )
        batch = find_active_batch(session, vessel.id)
        if batch is not None and batch.current_volume > new_capacity:
            error = ExceedsVesselCapacity(vessel.id, batch.current_volume, new_capacity)
            log_rejection(logger, "update_vessel", error, vessel_id=vessel.id)
            raise error

        before = audit_service.snapshot(vessel)
        for key, value in data.items():
            setattr(vessel, key, value)
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="vessels",
                record_id=vessel.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(vessel),
                actor=actor,
            ),
        )
        log_operation(logger, "update_vessel", "success", vessel_id=vessel.id)
        return vessel_to_dict(vessel)


def delete_vessel(
    vessel_id: int, *, actor: Optional[str] = None, session: Optional[Session] = None
) -> bool:
    """Soft-delete a vessel that has never held liquid.

    Raises:
        VesselNotFound: If the vessel does not exist
        InUseError: If any batch, transfer or keg fill references the vessel
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, lock=True)

        used = (
            session.query(Batch.id).filter(Batch.vessel_id == vessel.id).first() is not None
            or session.query(BatchTransfer.id)
            .filter(
                or_(
                    BatchTransfer.source_vessel_id == vessel.id,
                    BatchTransfer.destination_vessel_id == vessel.id,
                )
            )
            .first()
            is not None
            or session.query(KegFill.id).filter(KegFill.vessel_id == vessel.id).first()
            is not None
        )
        if used:
            error = InUseError("vessel", vessel.id, "it has batch, transfer or fill history")
            log_rejection(logger, "delete_vessel", error, vessel_id=vessel.id)
            raise error

        before = audit_service.snapshot(vessel)
        vessel.soft_delete()
        flush(session)
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="vessels",
                record_id=vessel.id,
                operation="delete",
                old_data=before,
                actor=actor,
            ),
        )
        log_operation(logger, "delete_vessel", "success", vessel_id=vessel.id)
        return True


# ============================================================================
# Status operations
# ============================================================================


def change_vessel_status(
    vessel_id: int,
    new_status: VesselStatus,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Manually change a vessel's status.

    While the vessel holds an active batch only the occupied statuses are
    reachable, and the batch's stage follows (aging -> AGING, ...). An empty
    vessel cannot be put into an occupied status by hand; liquid arrives
    through production runs and transfers.

    Raises:
        VesselNotFound: If the vessel does not exist
        ValidationError: If new_status is not a VesselStatus
        InvalidStateTransition: If the transition is not allowed
    """
    try:
        new_status = VesselStatus(new_status)
    except ValueError:
        raise ValidationError([f"Unknown vessel status: {new_status!r}"]) from None

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, lock=True)
        try:
            batch = find_active_batch(session, vessel.id, lock=True)
            occupied_target = new_status in OCCUPIED_VESSEL_STATUSES
            if batch is not None and not occupied_target:
                raise InvalidStateTransition(
                    "vessel",
                    vessel.id,
                    sorted(status.value for status in OCCUPIED_VESSEL_STATUSES),
                    new_status,
                    message=(
                        f"Vessel {vessel.id} holds active batch {batch.id}; "
                        f"it cannot be set to {new_status.value}"
                    ),
                )
            if batch is None and occupied_target:
                raise InvalidStateTransition(
                    "vessel",
                    vessel.id,
                    [VesselStatus.AVAILABLE],
                    vessel.status,
                    message=f"Vessel {vessel.id} holds no batch; it cannot be {new_status.value}",
                )
            before = audit_service.snapshot(vessel)
            previous = transition_vessel(vessel, new_status)
        except ServiceError as e:
            log_rejection(logger, "change_vessel_status", e, vessel_id=vessel.id)
            raise

        if batch is not None:
            batch.stage = _STAGE_FOR_STATUS[new_status]
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="vessels",
                record_id=vessel.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(vessel),
                actor=actor,
            ),
        )
        log_operation(
            logger,
            "change_vessel_status",
            "success",
            vessel_id=vessel.id,
            from_status=previous.value,
            to_status=new_status.value,
        )
        return vessel_to_dict(vessel)


def mark_vessel_clean(
    vessel_id: int, *, actor: Optional[str] = None, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Finish cleaning: cleaning -> available.

    Raises:
        VesselNotFound: If the vessel does not exist
        InvalidStateTransition: If the vessel is not in cleaning
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, lock=True)
        if vessel.status != VesselStatus.CLEANING:
            error = InvalidStateTransition(
                "vessel", vessel.id, [VesselStatus.CLEANING], vessel.status
            )
            log_rejection(logger, "mark_vessel_clean", error, vessel_id=vessel.id)
            raise error

        before = audit_service.snapshot(vessel)
        transition_vessel(vessel, VesselStatus.AVAILABLE)
        flush(session)
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="vessels",
                record_id=vessel.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(vessel),
                actor=actor,
            ),
        )
        log_operation(logger, "mark_vessel_clean", "success", vessel_id=vessel.id)
        return vessel_to_dict(vessel)


def purge_vessel(
    vessel_id: int,
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Discard the liquid in a vessel.

    The active batch becomes discarded (and is soft-deleted) with its volume
    zeroed; the vessel goes to cleaning.

    Args:
        vessel_id: Vessel to purge
        reason: Why the liquid was discarded
        actor: Who purged it
        session: Optional database session

    Returns:
        Status summary: vessel_id, vessel_status, batch_id, batch_status,
        discarded_volume

    Raises:
        VesselNotFound: If the vessel does not exist
        NoActiveBatch: If the vessel holds no liquid
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, lock=True)
        batch = find_active_batch(session, vessel.id, lock=True)
        if batch is None:
            error = NoActiveBatch(vessel.id)
            log_rejection(logger, "purge_vessel", error, vessel_id=vessel.id)
            raise error

        vessel_before = audit_service.snapshot(vessel)
        batch_before = audit_service.snapshot(batch)
        discarded_volume = batch.current_volume

        now = utc_now()
        batch.status = BatchStatus.DISCARDED
        batch.current_volume = Decimal("0")
        batch.end_date = now
        batch.deleted_at = now
        transition_vessel(vessel, VesselStatus.CLEANING)
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="batches",
                record_id=batch.id,
                operation="delete",
                old_data=batch_before,
                new_data=audit_service.snapshot(batch),
                actor=actor,
                reason=reason,
            ),
        )
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="vessels",
                record_id=vessel.id,
                operation="update",
                old_data=vessel_before,
                new_data=audit_service.snapshot(vessel),
                actor=actor,
                reason=reason,
            ),
        )
        log_operation(
            logger,
            "purge_vessel",
            "success",
            vessel_id=vessel.id,
            batch_id=batch.id,
            discarded_volume=str(discarded_volume),
        )
        return {
            "vessel_id": vessel.id,
            "vessel_status": VesselStatus.CLEANING.value,
            "batch_id": batch.id,
            "batch_status": BatchStatus.DISCARDED.value,
            "discarded_volume": discarded_volume,
        }
