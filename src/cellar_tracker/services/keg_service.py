"""
Keg Service - keg fleet management.

This module provides:
- Keg CRUD (create, get, update, retire)
- Cleaning returned kegs back into service
- Looking up a keg's active fill

Fill, distribution and return transitions live in keg_fill_service.
"""

from contextlib import nullcontext
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    ACTIVE_FILL_STATUSES,
    Keg,
    KegCondition,
    KegFill,
    KegStatus,
    KegType,
)
from cellar_tracker.utils.constants import (
    DEFAULT_KEG_LOCATION,
    KEG_TYPE_CAPACITY_L,
    LEDGER_VOLUME_UNIT,
    MAX_NAME_LENGTH,
)

from . import audit_service
from .database import flush, session_scope
from .exceptions import (
    ConflictError,
    InUseError,
    InvalidStateTransition,
    KegNotFound,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation, log_rejection
from .unit_converter import is_volume_unit, to_liters

logger = get_service_logger(__name__)

UPDATABLE_FIELDS = {
    "keg_number",
    "keg_type",
    "capacity",
    "capacity_unit",
    "condition",
    "current_location",
    "notes",
}


# ============================================================================
# Lookups shared with keg_fill_service
# ============================================================================


def load_keg(session: Session, keg_id: int, lock: bool = False) -> Keg:
    """Fetch a live keg, optionally locking the row.

    Raises:
        KegNotFound: If the keg is absent or retired (soft-deleted)
    """
    query = session.query(Keg).filter(Keg.id == keg_id, Keg.not_deleted())
    if lock:
        query = query.with_for_update()
    keg = query.first()
    if keg is None:
        raise KegNotFound(keg_id)
    return keg


def find_active_fill(session: Session, keg_id: int, lock: bool = False) -> Optional[KegFill]:
    """The keg's filled, ready or distributed fill, or None."""
    query = session.query(KegFill).filter(
        KegFill.keg_id == keg_id,
        KegFill.status.in_(list(ACTIVE_FILL_STATUSES)),
        KegFill.not_deleted(),
    )
    if lock:
        query = query.with_for_update()
    return query.order_by(KegFill.id).first()


def keg_to_dict(keg: Keg) -> Dict[str, Any]:
    result = keg.to_dict()
    result["capacity_liters"] = keg.capacity_liters
    return result


def _validate_fields(data: Dict[str, Any], errors: list) -> None:
    if "keg_number" in data:
        keg_number = data["keg_number"]
        if not isinstance(keg_number, str) or not keg_number.strip():
            errors.append("keg_number is required")
        elif len(keg_number.strip()) > 50:
            errors.append("keg_number must be at most 50 characters")
        else:
            data["keg_number"] = keg_number.strip()
    if "keg_type" in data:
        try:
            data["keg_type"] = KegType(data["keg_type"])
        except ValueError:
            errors.append(f"Unknown keg type: {data['keg_type']!r}")
    if "condition" in data:
        try:
            data["condition"] = KegCondition(data["condition"])
        except ValueError:
            errors.append(f"Unknown keg condition: {data['condition']!r}")
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
    if "current_location" in data:
        location = data["current_location"]
        if not isinstance(location, str) or not location.strip():
            errors.append("current_location is required")
        elif len(location.strip()) > MAX_NAME_LENGTH:
            errors.append(f"current_location must be at most {MAX_NAME_LENGTH} characters")
        else:
            data["current_location"] = location.strip()


def _check_number_free(session: Session, keg_number: str, exclude_id: Optional[int] = None):
    # Retired kegs keep their number; the column is unique across the fleet
    query = session.query(Keg.id).filter(Keg.keg_number == keg_number)
    if exclude_id is not None:
        query = query.filter(Keg.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(
            f"Keg number '{keg_number}' already exists", field="keg_number", value=keg_number
        )


def _record_update(session, keg, before, actor, reason=None):
    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="kegs",
            record_id=keg.id,
            operation="update",
            old_data=before,
            new_data=audit_service.snapshot(keg),
            actor=actor,
            reason=reason,
        ),
    )


# ============================================================================
# CRUD
# ============================================================================


def create_keg(
    keg_number: str,
    keg_type: KegType = KegType.OTHER,
    capacity: Optional[Decimal] = None,
    capacity_unit: str = LEDGER_VOLUME_UNIT,
    condition: KegCondition = KegCondition.GOOD,
    current_location: str = DEFAULT_KEG_LOCATION,
    notes: Optional[str] = None,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Add a keg to the fleet.

    Args:
        keg_number: Unique keg number (required)
        keg_type: Keg format (default other)
        capacity: Capacity in capacity_unit; defaults to the nominal size of
            keg_type and is required for KegType.OTHER
        capacity_unit: Volume unit of capacity (default L)
        condition: Physical condition (default good)
        current_location: Where the keg is (default cellar)
        notes: Optional notes
        actor: Who registered the keg
        session: Optional database session

    Returns:
        Created keg as dictionary

    Raises:
        ValidationError: If a field is invalid
        ConflictError: If the keg number is taken
    """
    data = {
        "keg_number": keg_number,
        "keg_type": keg_type,
        "capacity_unit": capacity_unit,
        "condition": condition,
        "current_location": current_location,
    }
    if capacity is not None:
        data["capacity"] = capacity
    errors: list = []
    _validate_fields(data, errors)
    if capacity is None and isinstance(data["keg_type"], KegType):
        nominal = KEG_TYPE_CAPACITY_L.get(data["keg_type"].value)
        if nominal is None:
            errors.append("capacity is required for kegs of type 'other'")
        else:
            data["capacity"] = nominal
            data["capacity_unit"] = LEDGER_VOLUME_UNIT
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            _check_number_free(session, data["keg_number"])
        except ConflictError as e:
            log_rejection(logger, "create_keg", e, keg_number=data["keg_number"])
            raise

        keg = Keg(status=KegStatus.AVAILABLE, notes=notes, **data)
        session.add(keg)
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="kegs",
                record_id=keg.id,
                operation="create",
                new_data=audit_service.snapshot(keg),
                actor=actor,
            ),
        )
        log_operation(logger, "create_keg", "success", keg_id=keg.id, keg_number=keg.keg_number)
        return keg_to_dict(keg)


def get_keg(keg_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get a keg by ID.

    Raises:
        KegNotFound: If the keg is absent or retired
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return keg_to_dict(load_keg(session, keg_id))


def update_keg(
    keg_id: int,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
    **kwargs,
) -> Dict[str, Any]:
    """
    Update keg attributes.

    Capacity cannot drop below the volume of the keg's active fill. Status
    changes go through the fill lifecycle, clean_keg() and retire_keg().

    Raises:
        KegNotFound: If the keg does not exist
        ValidationError: If a field is invalid or unknown
        ConflictError: If the new keg number is taken
    """
    unknown = sorted(set(kwargs) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError([f"Cannot update field(s): {', '.join(unknown)}"])
    data = dict(kwargs)
    errors: list = []
    _validate_fields(data, errors)
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        keg = load_keg(session, keg_id, lock=True)
        if "keg_number" in data:
            _check_number_free(session, data["keg_number"], exclude_id=keg.id)

        fill = find_active_fill(session, keg.id)
        if fill is not None and ("capacity" in data or "capacity_unit" in data):
            new_capacity = to_liters(
                data.get("capacity", keg.capacity), data.get("capacity_unit", keg.capacity_unit)
            )
            if new_capacity < fill.volume_taken:
                raise ValidationError(
                    [
                        f"capacity {new_capacity} L is below the {fill.volume_taken} L "
                        f"in active fill {fill.id}"
                    ]
                )

        before = audit_service.snapshot(keg)
        for key, value in data.items():
            setattr(keg, key, value)
        flush(session)
        _record_update(session, keg, before, actor)
        log_operation(logger, "update_keg", "success", keg_id=keg.id)
        return keg_to_dict(keg)


def retire_keg(
    keg_id: int,
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> bool:
    """
    Take a keg out of the fleet for good.

    The keg is soft-deleted with status and condition retired; its fill
    history stays.

    Raises:
        KegNotFound: If the keg does not exist
        InUseError: If the keg has an active fill
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        keg = load_keg(session, keg_id, lock=True)
        fill = find_active_fill(session, keg.id)
        if fill is not None:
            error = InUseError("keg", keg.id, f"fill {fill.id} is {fill.status.value}")
            log_rejection(logger, "retire_keg", error, keg_id=keg.id, keg_fill_id=fill.id)
            raise error

        before = audit_service.snapshot(keg)
        keg.status = KegStatus.RETIRED
        keg.condition = KegCondition.RETIRED
        keg.soft_delete()
        flush(session)
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="kegs",
                record_id=keg.id,
                operation="delete",
                old_data=before,
                new_data=audit_service.snapshot(keg),
                actor=actor,
                reason=reason,
            ),
        )
        log_operation(logger, "retire_keg", "success", keg_id=keg.id)
        return True


def clean_keg(
    keg_id: int, *, actor: Optional[str] = None, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Finish cleaning a returned keg: cleaning -> available.

    Raises:
        KegNotFound: If the keg does not exist
        InvalidStateTransition: If the keg is not in cleaning
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        keg = load_keg(session, keg_id, lock=True)
        if keg.status != KegStatus.CLEANING:
            error = InvalidStateTransition("keg", keg.id, [KegStatus.CLEANING], keg.status)
            log_rejection(logger, "clean_keg", error, keg_id=keg.id)
            raise error

        before = audit_service.snapshot(keg)
        keg.status = KegStatus.AVAILABLE
        flush(session)
        _record_update(session, keg, before, actor)
        log_operation(logger, "clean_keg", "success", keg_id=keg.id)
        return keg_to_dict(keg)


def get_active_fill(keg_id: int, *, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    """The keg's active fill as a dictionary, or None.

    Raises:
        KegNotFound: If the keg does not exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        load_keg(session, keg_id)
        fill = find_active_fill(session, keg_id)
        return fill.to_dict() if fill is not None else None
