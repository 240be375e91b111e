"""
Batch Service - liquid lifecycle and composition persistence.

This module provides functions for:
- Looking up batches and the active batch of a vessel
- Reading and rewriting a batch's composition rows
- Stage changes, completion and measured volume corrections

A batch is open while its status is active. Completed, blended and
discarded batches are closed: their volume and composition rows are never
changed again (BatchClosedError).
"""

from contextlib import nullcontext
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    Batch,
    BatchComposition,
    BatchStage,
    BatchStatus,
    OCCUPIED_VESSEL_STATUSES,
    Vessel,
    VesselStatus,
)
from cellar_tracker.utils.constants import MAX_REASON_LENGTH
from cellar_tracker.utils.datetime_utils import utc_now

from . import audit_service, vessel_service
from .composition import CompositionShare, scale_composition
from .database import flush, session_scope
from .exceptions import (
    BatchClosedError,
    BatchNotFound,
    ExceedsVesselCapacity,
    ServiceError,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation, log_rejection

logger = get_service_logger(__name__)


# ============================================================================
# Helpers shared with the other ledger services
# ============================================================================


def load_batch(session: Session, batch_id: int, lock: bool = False) -> Batch:
    """Fetch a live batch, optionally locking the row.

    Raises:
        BatchNotFound: If the batch is absent or soft-deleted
    """
    query = session.query(Batch).filter(Batch.id == batch_id, Batch.not_deleted())
    if lock:
        query = query.with_for_update()
    batch = query.first()
    if batch is None:
        raise BatchNotFound(batch_id)
    return batch


def ensure_open(batch: Batch) -> None:
    """Raise BatchClosedError unless the batch is active."""
    if batch.status != BatchStatus.ACTIVE:
        raise BatchClosedError(batch.id, batch.status)


def shares_of(batch: Batch) -> List[CompositionShare]:
    """The batch's live composition rows as shares."""
    return [row.to_share() for row in batch.live_compositions]


def write_composition(session: Session, batch: Batch, shares: Sequence[CompositionShare]) -> None:
    """
    Make a batch's composition rows match a list of shares.

    Rows are matched by provenance key: matching rows are updated in place,
    new sources get new rows, and sources no longer present are
    soft-deleted. Works for batches not yet flushed.

    Raises:
        BatchClosedError: If the batch is closed
    """
    ensure_open(batch)
    existing = {row.to_share().key: row for row in batch.live_compositions}
    wanted = set()
    for share in shares:
        wanted.add(share.key)
        row = existing.get(share.key)
        if row is None:
            batch.compositions.append(BatchComposition.from_share(share))
        else:
            row.apply_share(share)
    for key, row in existing.items():
        if key not in wanted:
            row.soft_delete()


def batch_to_dict(batch: Batch, include_composition: bool = False) -> Dict[str, Any]:
    result = batch.to_dict()
    if include_composition:
        result["composition"] = [
            {
                "source_type": share.source_type.value,
                "source_id": share.source_id,
                "vendor_id": share.vendor_id,
                "lot_code": share.lot_code,
                "volume": share.volume,
                "fraction": share.fraction,
                "material_cost": share.material_cost,
            }
            for share in shares_of(batch)
        ]
    return result


def release_vessel(vessel: Optional[Vessel]) -> None:
    """Send a vessel whose batch left or closed to cleaning."""
    if vessel is not None and vessel.status in OCCUPIED_VESSEL_STATUSES:
        vessel_service.transition_vessel(vessel, VesselStatus.CLEANING)


def finish_batch(
    session: Session,
    batch: Batch,
    *,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """
    Complete an open batch inside the caller's transaction.

    The batch keeps its residual volume for the record; its vessel goes to
    cleaning. Used by complete_batch() and by keg fills that draw a batch
    down to the minimum working volume.
    """
    ensure_open(batch)
    vessel = (
        vessel_service.load_vessel(session, batch.vessel_id, lock=True)
        if batch.vessel_id is not None
        else None
    )
    batch_before = audit_service.snapshot(batch)
    vessel_before = audit_service.snapshot(vessel) if vessel is not None else None

    batch.status = BatchStatus.COMPLETED
    batch.end_date = utc_now()
    release_vessel(vessel)
    flush(session)

    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="batches",
            record_id=batch.id,
            operation="update",
            old_data=batch_before,
            new_data=audit_service.snapshot(batch),
            actor=actor,
            reason=reason,
        ),
    )
    if vessel is not None:
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


# ============================================================================
# Queries
# ============================================================================


def get_batch(
    batch_id: int, *, include_composition: bool = True, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Get a batch by ID, with its composition by default.

    Raises:
        BatchNotFound: If the batch is absent or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return batch_to_dict(load_batch(session, batch_id), include_composition)


def get_active_batch(
    vessel_id: int, *, lock: bool = False, session: Optional[Session] = None
) -> Optional[Dict[str, Any]]:
    """
    Get the active batch occupying a vessel.

    Args:
        vessel_id: Vessel ID
        lock: Lock the batch row (SELECT ... FOR UPDATE)
        session: Optional database session

    Returns:
        Batch dictionary with composition, or None if the vessel is empty

    Raises:
        VesselNotFound: If the vessel does not exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel_service.load_vessel(session, vessel_id)
        batch = vessel_service.find_active_batch(session, vessel_id, lock=lock)
        return batch_to_dict(batch, include_composition=True) if batch is not None else None


def get_composition(
    batch_id: int, *, session: Optional[Session] = None
) -> List[CompositionShare]:
    """The batch's composition as CompositionShare values."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return shares_of(load_batch(session, batch_id))


# ============================================================================
# Mutations
# ============================================================================


def set_batch_stage(
    batch_id: int,
    stage: BatchStage,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Change an active batch's stage; its vessel's occupied status follows.

    Raises:
        BatchNotFound: If the batch does not exist
        ValidationError: If stage is not a BatchStage
        BatchClosedError: If the batch is closed
    """
    try:
        stage = BatchStage(stage)
    except ValueError:
        raise ValidationError([f"Unknown batch stage: {stage!r}"]) from None

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = load_batch(session, batch_id, lock=True)
        try:
            ensure_open(batch)
        except BatchClosedError as e:
            log_rejection(logger, "set_batch_stage", e, batch_id=batch.id)
            raise

        before = audit_service.snapshot(batch)
        batch.stage = stage
        if batch.vessel_id is not None:
            vessel = vessel_service.load_vessel(session, batch.vessel_id, lock=True)
            vessel_service.transition_vessel(vessel, stage.vessel_status)
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="batches",
                record_id=batch.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(batch),
                actor=actor,
            ),
        )
        log_operation(logger, "set_batch_stage", "success", batch_id=batch.id, stage=stage.value)
        return batch_to_dict(batch)


def complete_batch(
    batch_id: int,
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Close a batch as completed and send its vessel to cleaning.

    Raises:
        BatchNotFound: If the batch does not exist
        BatchClosedError: If the batch is already closed
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = load_batch(session, batch_id, lock=True)
        try:
            finish_batch(session, batch, actor=actor, reason=reason)
        except ServiceError as e:
            log_rejection(logger, "complete_batch", e, batch_id=batch.id)
            raise
        log_operation(logger, "complete_batch", "success", batch_id=batch.id)
        return batch_to_dict(batch)


def adjust_batch_volume(
    batch_id: int,
    new_volume: Decimal,
    reason: str,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Record a measured volume correction.

    The composition is scaled to the new volume. A new volume of zero
    completes the batch and sends its vessel to cleaning.

    Args:
        batch_id: Batch to correct
        new_volume: Measured volume in liters (>= 0)
        reason: Why the volume changed (required)
        actor: Who measured it
        session: Optional database session

    Returns:
        Updated batch dictionary with composition

    Raises:
        BatchNotFound: If the batch does not exist
        ValidationError: If new_volume or reason are invalid
        BatchClosedError: If the batch is closed
        ExceedsVesselCapacity: If the new volume does not fit the vessel
    """
    errors = []
    try:
        new_volume = Decimal(str(new_volume))
        if not new_volume.is_finite() or new_volume < 0:
            errors.append("new_volume cannot be negative")
    except (InvalidOperation, ValueError):
        errors.append("new_volume must be a number")
    if not isinstance(reason, str) or not reason.strip():
        errors.append("reason is required")
    elif len(reason) > MAX_REASON_LENGTH:
        errors.append(f"reason must be at most {MAX_REASON_LENGTH} characters")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = load_batch(session, batch_id, lock=True)
        try:
            ensure_open(batch)
            vessel = None
            if batch.vessel_id is not None:
                vessel = vessel_service.load_vessel(session, batch.vessel_id, lock=True)
                capacity = vessel_service.capacity_liters(vessel)
                if new_volume > capacity:
                    raise ExceedsVesselCapacity(vessel.id, new_volume, capacity)
            old_volume = batch.current_volume
            if old_volume <= 0 and new_volume > 0:
                raise ValidationError(
                    [f"Batch {batch.id} is empty; its composition cannot be scaled up"]
                )
        except ServiceError as e:
            log_rejection(logger, "adjust_batch_volume", e, batch_id=batch.id)
            raise

        before = audit_service.snapshot(batch)
        if old_volume > 0:
            write_composition(
                session,
                batch,
                scale_composition(shares_of(batch), new_volume / old_volume, total=new_volume),
            )
        batch.current_volume = new_volume
        flush(session)
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="batches",
                record_id=batch.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(batch),
                actor=actor,
                reason=reason.strip(),
            ),
        )

        if new_volume <= 0:
            finish_batch(session, batch, actor=actor, reason=reason.strip())

        log_operation(
            logger,
            "adjust_batch_volume",
            "success",
            batch_id=batch.id,
            old_volume=str(old_volume),
            new_volume=str(new_volume),
        )
        return batch_to_dict(batch, include_composition=True)
