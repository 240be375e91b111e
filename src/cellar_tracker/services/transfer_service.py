"""
Transfer Engine - move, split and blend liquid between vessels.

One call to transfer_liquid() is one atomic transaction:

1. Lock the source vessel and resolve its unique active batch.
2. Lock the destination vessel. No active batch there means a move (the
   vessel must be available); an active batch means a blend (the vessel
   must be in an occupied status).
3. Check volume + loss against the source volume plus the rounding
   tolerance; clamp to the source volume and record the true loss.
4. Check the destination capacity.
5. Leave any remainder behind as a new "remaining" batch, or send the
   source vessel to cleaning.
6. Move the batch, or merge it into the destination batch.
7. Write one immutable BatchTransfer row.
8. Queue audit events for every changed record.

Any failure raises before commit and nothing is written.
"""

from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from cellar_tracker.models import (
    BLEND_NOTE_PREFIX,
    OCCUPIED_VESSEL_STATUSES,
    Batch,
    BatchStatus,
    BatchTransfer,
    TransferType,
    VesselStatus,
)
from cellar_tracker.utils.config import get_config
from cellar_tracker.utils.datetime_utils import utc_now

from . import audit_service, batch_service, vessel_service
from .composition import merge_compositions, scale_composition
from .database import flush, session_scope
from .dto import PaginatedResult, PaginationParams, paginate
from .exceptions import (
    ExceedsAvailableVolume,
    ExceedsVesselCapacity,
    NoActiveBatch,
    ServiceError,
    ValidationError,
    VesselNotAvailable,
)
from .logging_utils import get_service_logger, log_operation, log_rejection
from .requests import TransferRequest

logger = get_service_logger(__name__)

ZERO = Decimal("0")


def transfer_liquid(
    request: Union[TransferRequest, Dict[str, Any]],
    *,
    actor: Optional[str] = None,
    tolerance: Optional[Decimal] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Transfer liquid from one vessel to another.

    Args:
        request: TransferRequest (or a dict of its fields)
        actor: Who performed the transfer
        tolerance: Liters of rounding slack accepted over the source volume
            (default: Config.transfer_tolerance)
        session: Optional database session; the caller then owns the transaction

    Returns:
        Dict with keys:
            - "transfer": the BatchTransfer record
            - "transfer_type": "move" or "blend"
            - "source_batch": the batch drawn from, after the transfer
            - "destination_batch": the batch now holding the transferred volume
            - "remaining_batch": batch left in the source vessel, or None
            - "adjusted_loss": loss actually recorded
            - "source_vessel_status" / "destination_vessel_status"

    Raises:
        ValidationError: If the request is invalid
        VesselNotFound: If either vessel does not exist
        NoActiveBatch: If the source vessel holds no active batch
        VesselNotAvailable: If the destination cannot receive liquid
        ExceedsAvailableVolume: If volume + loss exceeds the source beyond tolerance
        ExceedsVesselCapacity: If the destination would overflow
    """
    if isinstance(request, dict):
        request = TransferRequest(**request)
    if tolerance is None:
        tolerance = get_config().transfer_tolerance
    tolerance = Decimal(str(tolerance))
    if tolerance < 0:
        raise ValidationError(["tolerance cannot be negative"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            return _transfer_impl(session, request, actor, tolerance)
        except ServiceError as e:
            log_rejection(
                logger,
                "transfer_liquid",
                e,
                source_vessel_id=request.source_vessel_id,
                dest_vessel_id=request.dest_vessel_id,
                volume=str(request.volume),
            )
            raise


def _transfer_impl(
    session: Session, request: TransferRequest, actor: Optional[str], tolerance: Decimal
) -> Dict[str, Any]:
    # Lock both vessels in id order so two opposing transfers cannot deadlock
    vessels = {}
    for vessel_id in sorted((request.source_vessel_id, request.dest_vessel_id)):
        vessels[vessel_id] = vessel_service.load_vessel(session, vessel_id, lock=True)
    source_vessel = vessels[request.source_vessel_id]
    dest_vessel = vessels[request.dest_vessel_id]

    # Step 1: source batch
    source_batch = vessel_service.find_active_batch(session, source_vessel.id, lock=True)
    if source_batch is None:
        raise NoActiveBatch(source_vessel.id)

    # Step 2: move or blend
    dest_batch = vessel_service.find_active_batch(session, dest_vessel.id, lock=True)
    if dest_batch is None:
        transfer_type = TransferType.MOVE
        if dest_vessel.status != VesselStatus.AVAILABLE:
            raise VesselNotAvailable(dest_vessel.id, [VesselStatus.AVAILABLE], dest_vessel.status)
    else:
        transfer_type = TransferType.BLEND
        if dest_vessel.status not in OCCUPIED_VESSEL_STATUSES:
            raise VesselNotAvailable(
                dest_vessel.id,
                sorted(status.value for status in OCCUPIED_VESSEL_STATUSES),
                dest_vessel.status,
            )
        batch_service.ensure_open(dest_batch)

    # Step 3: volume and tolerance
    volume = request.volume
    source_volume = source_batch.current_volume
    transfer_volume = volume + request.loss
    if transfer_volume > source_volume + tolerance:
        raise ExceedsAvailableVolume(transfer_volume, source_volume)
    actual_volume = min(transfer_volume, source_volume)
    if actual_volume < volume:
        raise ExceedsAvailableVolume(
            volume,
            source_volume,
            message=(
                f"Transfer volume {volume} L exceeds the {source_volume} L in the source "
                f"batch; the rounding tolerance only absorbs loss"
            ),
        )
    adjusted_loss = actual_volume - volume

    # Step 4: destination capacity
    dest_current = dest_batch.current_volume if dest_batch is not None else ZERO
    dest_capacity = vessel_service.capacity_liters(dest_vessel)
    if dest_current + volume > dest_capacity:
        raise ExceedsVesselCapacity(dest_vessel.id, dest_current + volume, dest_capacity)

    # Everything is validated; from here on only writes
    source_shares = batch_service.shares_of(source_batch)
    source_batch_before = audit_service.snapshot(source_batch)
    source_vessel_before = audit_service.snapshot(source_vessel)
    dest_vessel_before = audit_service.snapshot(dest_vessel)
    dest_batch_before = audit_service.snapshot(dest_batch) if dest_batch is not None else None

    # Step 5: remainder
    remaining_volume = source_volume - actual_volume
    remaining_batch = None
    if remaining_volume > 0:
        remaining_batch = Batch(
            name=f"{source_batch.name} - Remaining",
            batch_number=f"{source_batch.batch_number}-R",
            vessel_id=source_vessel.id,
            initial_volume=remaining_volume,
            current_volume=remaining_volume,
            status=BatchStatus.ACTIVE,
            stage=source_batch.stage,
            start_date=utc_now(),
            origin_production_run_id=source_batch.origin_production_run_id,
            parent_batch_id=source_batch.id,
        )
        batch_service.write_composition(
            session,
            remaining_batch,
            scale_composition(
                source_shares, remaining_volume / source_volume, total=remaining_volume
            ),
        )
    else:
        vessel_service.transition_vessel(source_vessel, VesselStatus.CLEANING)

    # Step 6: move or blend
    incoming = scale_composition(source_shares, volume / source_volume, total=volume)
    if transfer_type is TransferType.MOVE:
        batch_service.write_composition(session, source_batch, incoming)
        source_batch.vessel_id = dest_vessel.id
        source_batch.current_volume = volume
        vessel_service.transition_vessel(dest_vessel, source_batch.stage.vessel_status)
        destination_batch = source_batch
    else:
        new_dest_volume = dest_current + volume
        batch_service.write_composition(
            session,
            dest_batch,
            merge_compositions(batch_service.shares_of(dest_batch), incoming, new_dest_volume),
        )
        dest_batch.current_volume = new_dest_volume
        source_batch.status = BatchStatus.BLENDED
        source_batch.current_volume = ZERO
        source_batch.vessel_id = None
        source_batch.end_date = utc_now()
        destination_batch = dest_batch

    if remaining_batch is not None:
        session.add(remaining_batch)
    flush(session)

    # Step 7: transfer record
    notes = request.notes
    if transfer_type is TransferType.BLEND:
        blend_note = (
            f"{BLEND_NOTE_PREFIX} Blended {volume}L from batch {source_batch.batch_number} "
            f"into batch {dest_batch.batch_number}. Total volume: {dest_batch.current_volume}L"
        )
        notes = f"{blend_note} | {request.notes}" if request.notes else blend_note

    transfer = BatchTransfer(
        transfer_type=transfer_type,
        source_batch_id=source_batch.id,
        source_vessel_id=source_vessel.id,
        destination_batch_id=destination_batch.id,
        destination_vessel_id=dest_vessel.id,
        remaining_batch_id=remaining_batch.id if remaining_batch is not None else None,
        volume_transferred=volume,
        loss=adjusted_loss,
        total_volume_processed=actual_volume,
        remaining_volume=remaining_volume if remaining_volume > 0 else None,
        notes=notes,
        transferred_by=actor,
        transferred_at=utc_now(),
    )
    session.add(transfer)
    flush(session)

    # Step 8: audit trail
    _record_audit_trail(
        session,
        actor=actor,
        transfer=transfer,
        source_batch=source_batch,
        source_batch_before=source_batch_before,
        dest_batch=dest_batch,
        dest_batch_before=dest_batch_before,
        remaining_batch=remaining_batch,
        source_vessel=source_vessel,
        source_vessel_before=source_vessel_before,
        dest_vessel=dest_vessel,
        dest_vessel_before=dest_vessel_before,
    )

    log_operation(
        logger,
        "transfer_liquid",
        "success",
        transfer_id=transfer.id,
        transfer_type=transfer_type.value,
        source_vessel_id=source_vessel.id,
        dest_vessel_id=dest_vessel.id,
        source_batch_id=source_batch.id,
        remaining_batch_id=transfer.remaining_batch_id,
        volume=str(volume),
        loss=str(adjusted_loss),
    )

    return {
        "transfer": transfer.to_dict(),
        "transfer_type": transfer_type.value,
        "source_batch": batch_service.batch_to_dict(source_batch, include_composition=True),
        "destination_batch": batch_service.batch_to_dict(
            destination_batch, include_composition=True
        ),
        "remaining_batch": (
            batch_service.batch_to_dict(remaining_batch, include_composition=True)
            if remaining_batch is not None
            else None
        ),
        "adjusted_loss": adjusted_loss,
        "source_vessel_status": VesselStatus(source_vessel.status).value,
        "destination_vessel_status": VesselStatus(dest_vessel.status).value,
    }


def _record_audit_trail(
    session,
    *,
    actor,
    transfer,
    source_batch,
    source_batch_before,
    dest_batch,
    dest_batch_before,
    remaining_batch,
    source_vessel,
    source_vessel_before,
    dest_vessel,
    dest_vessel_before,
):
    def update(table_name, record, before, reason):
        after = audit_service.snapshot(record)
        if after == before:
            return
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name=table_name,
                record_id=record.id,
                operation="update",
                old_data=before,
                new_data=after,
                actor=actor,
                reason=reason,
            ),
        )

    reason = f"transfer {transfer.id}"
    if remaining_batch is not None:
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="batches",
                record_id=remaining_batch.id,
                operation="create",
                new_data=audit_service.snapshot(remaining_batch),
                actor=actor,
                reason=f"Remaining batch created by partial {reason}",
            ),
        )
    if dest_batch is not None:
        update("batches", dest_batch, dest_batch_before, f"Blend target of {reason}")
    update("vessels", dest_vessel, dest_vessel_before, f"Destination of {reason}")
    update("batches", source_batch, source_batch_before, f"Source of {reason}")
    update("vessels", source_vessel, source_vessel_before, f"Source vessel of {reason}")
    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="batch_transfers",
            record_id=transfer.id,
            operation="create",
            new_data=audit_service.snapshot(transfer),
            actor=actor,
        ),
    )


def get_transfer_history(
    vessel_id: Optional[int] = None,
    batch_id: Optional[int] = None,
    pagination: Optional[PaginationParams] = None,
    *,
    session: Optional[Session] = None,
) -> PaginatedResult[Dict[str, Any]]:
    """
    List transfers touching a vessel or a batch, newest first.

    Args:
        vessel_id: Only transfers from or to this vessel
        batch_id: Only transfers whose source, destination or remaining batch is this one
        pagination: Page to return, or None for every transfer
        session: Optional database session

    Returns:
        PaginatedResult of transfer dictionaries
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(BatchTransfer).filter(BatchTransfer.not_deleted())
        if vessel_id is not None:
            query = query.filter(
                or_(
                    BatchTransfer.source_vessel_id == vessel_id,
                    BatchTransfer.destination_vessel_id == vessel_id,
                )
            )
        if batch_id is not None:
            query = query.filter(
                or_(
                    BatchTransfer.source_batch_id == batch_id,
                    BatchTransfer.destination_batch_id == batch_id,
                    BatchTransfer.remaining_batch_id == batch_id,
                )
            )
        query = query.order_by(BatchTransfer.transferred_at.desc(), BatchTransfer.id.desc())

        return paginate(query, pagination, lambda row: row.to_dict())
