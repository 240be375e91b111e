"""
Keg Fill Service - container fill lifecycle.

A fill moves liquid from a batch into kegs and then follows the keg out
and back:

    filled -> ready -> distributed -> returned
       \\________\\___________\\______-> voided

returned and voided are terminal. Keg status follows the fill: filled
while in the cellar, distributed while out, cleaning after return, and
available again after a void (or once cleaned).

Every transition locks the fill and its keg and re-checks both statuses
inside the transaction.
"""

from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    ACTIVE_FILL_STATUSES,
    KegFill,
    KegFillMaterial,
    KegFillStatus,
    KegStatus,
    PurchaseItemType,
)
from cellar_tracker.utils.config import get_config
from cellar_tracker.utils.constants import DEFAULT_KEG_LOCATION, VOLUME_QUANTUM
from cellar_tracker.utils.datetime_utils import utc_now

from . import audit_service, batch_service, depletion_service, keg_service, vessel_service
from .composition import scale_composition
from .database import flush, session_scope
from .exceptions import (
    ExceedsKegCapacity,
    InsufficientBatchVolume,
    InvalidStateTransition,
    KegFillNotFound,
    KegNotAvailable,
    ServiceError,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation, log_rejection
from .requests import DistributeRequest, FillKegsRequest, ReturnRequest, VoidRequest

logger = get_service_logger(__name__)

ZERO = Decimal("0")


# ============================================================================
# Helpers
# ============================================================================


def _load_fill(session: Session, fill_id: int, lock: bool = False) -> KegFill:
    query = session.query(KegFill).filter(KegFill.id == fill_id, KegFill.not_deleted())
    if lock:
        query = query.with_for_update()
    fill = query.first()
    if fill is None:
        raise KegFillNotFound(fill_id)
    return fill


def _require_fill_status(fill: KegFill, allowed: Iterable[KegFillStatus]) -> None:
    allowed = list(allowed)
    if fill.status not in allowed:
        raise InvalidStateTransition(
            "keg_fill", fill.id, sorted(status.value for status in allowed), fill.status
        )


def _require_keg_status(keg, allowed: Iterable[KegStatus]) -> None:
    allowed = list(allowed)
    if keg.status not in allowed:
        raise InvalidStateTransition(
            "keg", keg.id, sorted(status.value for status in allowed), keg.status
        )


def _split(total: Decimal, weights: List[Decimal]) -> List[Decimal]:
    """Split total in proportion to weights; the last part absorbs the rounding."""
    weight_sum = sum(weights, ZERO)
    parts = [(total * weight / weight_sum).quantize(VOLUME_QUANTUM) for weight in weights[:-1]]
    parts.append(total - sum(parts, ZERO))
    return parts


def fill_to_dict(fill: KegFill, include_materials: bool = False) -> Dict[str, Any]:
    result = fill.to_dict()
    if include_materials:
        result["materials"] = [
            material.to_dict() for material in fill.materials if material.deleted_at is None
        ]
    return result


def _record_updates(session, actor, reason, *changes) -> None:
    for table_name, record, before in changes:
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name=table_name,
                record_id=record.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(record),
                actor=actor,
                reason=reason,
            ),
        )


# ============================================================================
# Filling
# ============================================================================


def fill_kegs(
    request: Union[FillKegsRequest, Dict[str, Any]],
    actor: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Fill kegs from a batch.

    The batch gives up the kegs' volume plus the loss and its composition
    is scaled down to match. Loss is shared between the fills in
    proportion to their volume. Packaging materials are drawn from their
    purchase lines through the depletion gate and split evenly across the
    kegs. A batch left at or below the minimum working volume is
    completed and its vessel sent to cleaning.

    Args:
        request: FillKegsRequest (or a dict of its fields)
        actor: Who filled the kegs
        session: Optional database session

    Returns:
        Dict with keys:
            - "fills": created fills (with materials)
            - "batch": the batch after the draw
            - "batch_completed": True if the batch was auto-completed

    Raises:
        ValidationError: If the request is invalid, the batch is not in the
            named vessel or a material line is not packaging
        BatchNotFound / VesselNotFound / KegNotFound: If a record is missing
        BatchClosedError: If the batch is closed
        KegNotAvailable: If a keg is not available or has an active fill
        ExceedsKegCapacity: If a volume does not fit its keg
        InsufficientBatchVolume: If the kegs plus loss exceed the batch volume
        InsufficientQuantity: If a packaging line cannot cover its material
    """
    if isinstance(request, dict):
        request = FillKegsRequest(**request)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            return _fill_kegs_impl(session, request, actor)
        except ServiceError as e:
            log_rejection(
                logger,
                "fill_kegs",
                e,
                batch_id=request.batch_id,
                keg_ids=[entry.keg_id for entry in request.kegs],
            )
            raise


def _fill_kegs_impl(session: Session, request: FillKegsRequest, actor: Optional[str]):
    batch = batch_service.load_batch(session, request.batch_id, lock=True)
    batch_service.ensure_open(batch)
    vessel = vessel_service.load_vessel(session, request.vessel_id, lock=True)
    if batch.vessel_id != vessel.id:
        raise ValidationError([f"Batch {batch.id} is not in vessel {vessel.id}"])

    # Lock kegs in id order
    entries = sorted(request.kegs, key=lambda entry: entry.keg_id)
    kegs = {}
    for entry in entries:
        keg = keg_service.load_keg(session, entry.keg_id, lock=True)
        if keg.status != KegStatus.AVAILABLE:
            raise KegNotAvailable(keg.id, keg.status)
        active = keg_service.find_active_fill(session, keg.id, lock=True)
        if active is not None:
            raise KegNotAvailable(
                keg.id, keg.status, message=f"Keg {keg.id} still has active fill {active.id}"
            )
        if entry.volume_taken > keg.capacity_liters:
            raise ExceedsKegCapacity(keg.id, entry.volume_taken, keg.capacity_liters)
        kegs[keg.id] = keg

    total_draw = request.total_volume + request.loss
    if total_draw > batch.current_volume:
        raise InsufficientBatchVolume(batch.id, total_draw, batch.current_volume)

    errors = []
    for material in request.materials:
        line = depletion_service.load_line(session, material.purchase_line_item_id)
        if line.item_type != PurchaseItemType.PACKAGING:
            errors.append(f"purchase line {line.id} is not a packaging line")
    if errors:
        raise ValidationError(errors)

    drawn = [
        (
            material,
            depletion_service.consume(
                session, material.purchase_line_item_id, material.quantity, material.unit
            ),
        )
        for material in request.materials
    ]

    # All checks passed; write
    batch_before = audit_service.snapshot(batch)
    old_volume = batch.current_volume
    new_volume = old_volume - total_draw
    scaled = scale_composition(
        batch_service.shares_of(batch), new_volume / old_volume, total=new_volume
    )
    batch_service.write_composition(session, batch, scaled)
    batch.current_volume = new_volume

    now = utc_now()
    losses = _split(request.loss, [entry.volume_taken for entry in entries])
    fills = []
    keg_befores = {}
    for entry, loss in zip(entries, losses):
        keg = kegs[entry.keg_id]
        keg_befores[keg.id] = audit_service.snapshot(keg)
        fill = KegFill(
            keg_id=keg.id,
            batch_id=batch.id,
            vessel_id=vessel.id,
            volume_taken=entry.volume_taken,
            remaining_volume=entry.volume_taken,
            loss=loss,
            status=KegFillStatus.FILLED,
            filled_at=now,
            notes=request.notes,
            created_by=actor,
        )
        session.add(fill)
        keg.status = KegStatus.FILLED
        fills.append(fill)

    even = [Decimal("1")] * len(fills)
    for material, quantity in drawn:
        for fill, share in zip(fills, _split(quantity, even)):
            fill.materials.append(
                KegFillMaterial(
                    purchase_line_item_id=material.purchase_line_item_id,
                    quantity_used=share,
                    material_type=material.material_type,
                )
            )
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
            reason=f"keg fill of {len(fills)} keg(s)",
        ),
    )
    for fill in fills:
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="keg_fills",
                record_id=fill.id,
                operation="create",
                new_data=audit_service.snapshot(fill),
                actor=actor,
            ),
        )
        keg = kegs[fill.keg_id]
        _record_updates(session, actor, None, ("kegs", keg, keg_befores[keg.id]))

    batch_completed = False
    if new_volume <= get_config().min_working_volume:
        batch_service.finish_batch(
            session, batch, actor=actor, reason="drawn down to minimum working volume"
        )
        batch_completed = True

    log_operation(
        logger,
        "fill_kegs",
        "success",
        batch_id=batch.id,
        fill_ids=[fill.id for fill in fills],
        volume=str(request.total_volume),
        loss=str(request.loss),
        batch_completed=batch_completed,
    )
    return {
        "fills": [fill_to_dict(fill, include_materials=True) for fill in fills],
        "batch": batch_service.batch_to_dict(batch, include_composition=True),
        "batch_completed": batch_completed,
    }


# ============================================================================
# Transitions
# ============================================================================


def _apply_ready(session, fill, keg, request, actor):
    _require_fill_status(fill, [KegFillStatus.FILLED])
    fill.status = KegFillStatus.READY
    fill.ready_at = utc_now()


def _check_distribute(fill, keg):
    _require_fill_status(fill, [KegFillStatus.FILLED, KegFillStatus.READY])
    _require_keg_status(keg, [KegStatus.FILLED])


def _check_return(fill, keg):
    _require_fill_status(fill, [KegFillStatus.DISTRIBUTED])
    _require_keg_status(keg, [KegStatus.DISTRIBUTED])


def _apply_distribute(session, fill, keg, request: DistributeRequest, actor):
    _check_distribute(fill, keg)
    fill.status = KegFillStatus.DISTRIBUTED
    fill.distributed_at = request.distributed_at or utc_now()
    fill.distribution_location = request.location
    fill.distribution_channel = request.channel
    if request.notes:
        fill.notes = f"{fill.notes}\n{request.notes}" if fill.notes else request.notes
    keg.status = KegStatus.DISTRIBUTED
    keg.current_location = request.location


def _apply_return(session, fill, keg, request: ReturnRequest, actor):
    _check_return(fill, keg)
    fill.status = KegFillStatus.RETURNED
    fill.returned_at = request.returned_at or utc_now()
    fill.remaining_volume = ZERO
    if request.notes:
        fill.notes = f"{fill.notes}\n{request.notes}" if fill.notes else request.notes
    keg.status = KegStatus.CLEANING
    keg.current_location = request.location


def _apply_void(session, fill, keg, request: VoidRequest, actor):
    _require_fill_status(fill, ACTIVE_FILL_STATUSES)
    fill.status = KegFillStatus.VOIDED
    fill.voided_at = utc_now()
    fill.void_reason = request.reason
    fill.voided_by = actor
    keg.status = KegStatus.AVAILABLE
    keg.current_location = DEFAULT_KEG_LOCATION
    flush(session)
    # Released packaging counts as available again
    for line_item_id in sorted({material.purchase_line_item_id for material in fill.materials}):
        depletion_service.refresh_depletion(session, line_item_id)


def _transition(
    operation: str,
    fill_id: int,
    apply: Callable,
    request: Any,
    actor: Optional[str],
    session: Optional[Session],
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        fill = _load_fill(session, fill_id, lock=True)
        keg = keg_service.load_keg(session, fill.keg_id, lock=True)
        fill_before = audit_service.snapshot(fill)
        keg_before = audit_service.snapshot(keg)
        try:
            apply(session, fill, keg, request, actor)
        except ServiceError as e:
            log_rejection(logger, operation, e, keg_fill_id=fill.id, keg_id=keg.id)
            raise
        flush(session)

        _record_updates(
            session, actor, reason, ("keg_fills", fill, fill_before), ("kegs", keg, keg_before)
        )
        log_operation(
            logger,
            operation,
            "success",
            keg_fill_id=fill.id,
            keg_id=keg.id,
            status=fill.status.value,
        )
        return fill_to_dict(fill)


def mark_ready(
    fill_id: int, *, actor: Optional[str] = None, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Mark a fill conditioned and ready to ship: filled -> ready.

    Raises:
        KegFillNotFound: If the fill does not exist
        InvalidStateTransition: If the fill is not filled
    """
    return _transition("mark_ready", fill_id, _apply_ready, None, actor, session)


def distribute_fill(
    fill_id: int,
    request: Union[DistributeRequest, Dict[str, Any]],
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Send a keg out: filled|ready -> distributed.

    Records location, channel and time on the fill; the keg becomes
    distributed at the new location.

    Raises:
        KegFillNotFound: If the fill does not exist
        InvalidStateTransition: If the fill or keg is in the wrong status
    """
    if isinstance(request, dict):
        request = DistributeRequest(**request)
    return _transition("distribute_fill", fill_id, _apply_distribute, request, actor, session)


def return_fill(
    fill_id: int,
    request: Union[ReturnRequest, Dict[str, Any], None] = None,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Record a keg coming back: distributed -> returned.

    The fill's remaining volume goes to zero; the keg goes to cleaning and
    back to the cellar (or request.location).

    Raises:
        KegFillNotFound: If the fill does not exist
        InvalidStateTransition: If the fill is not distributed
    """
    if request is None:
        request = ReturnRequest()
    elif isinstance(request, dict):
        request = ReturnRequest(**request)
    return _transition("return_fill", fill_id, _apply_return, request, actor, session)


def void_fill(
    fill_id: int,
    request: Union[VoidRequest, Dict[str, Any], str],
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Void a mistaken fill.

    The keg becomes available again. The liquid is not returned to the
    batch; packaging materials drawn by the fill stop counting as consumed.

    Args:
        fill_id: Fill to void
        request: VoidRequest, a dict of its fields, or the reason string
        actor: Who voided the fill
        session: Optional database session

    Raises:
        ValidationError: If the reason is missing
        KegFillNotFound: If the fill does not exist
        InvalidStateTransition: If the fill is already returned or voided
    """
    if isinstance(request, str):
        request = VoidRequest(reason=request)
    elif isinstance(request, dict):
        request = VoidRequest(**request)
    return _transition(
        "void_fill", fill_id, _apply_void, request, actor, session, reason=request.reason
    )


# ============================================================================
# Bulk transitions
# ============================================================================


def _bulk(
    operation: str,
    fill_ids: Iterable[int],
    check: Callable,
    apply: Callable,
    request: Any,
    actor: Optional[str],
    session: Optional[Session],
) -> Dict[str, Any]:
    """
    Apply one transition to many fills in a single transaction.

    Each fill is checked first; fills that fail are reported under
    "skipped" and left untouched, the rest are applied together.
    """
    ordered_ids = list(dict.fromkeys(fill_ids))
    if not ordered_ids:
        raise ValidationError(["fill_ids must contain at least one fill"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        # Partition before writing anything
        valid = []
        skipped = []
        for fill_id in sorted(ordered_ids):
            try:
                fill = _load_fill(session, fill_id, lock=True)
                keg = keg_service.load_keg(session, fill.keg_id, lock=True)
                check(fill, keg)
            except ServiceError as e:
                skipped.append({"keg_fill_id": fill_id, "code": e.code, "reason": str(e)})
                log_rejection(logger, operation, e, keg_fill_id=fill_id)
                continue
            valid.append((fill, keg))

        applied = []
        for fill, keg in valid:
            fill_before = audit_service.snapshot(fill)
            keg_before = audit_service.snapshot(keg)
            apply(session, fill, keg, request, actor)
            applied.append((fill, fill_before, keg, keg_before))
        flush(session)

        for fill, fill_before, keg, keg_before in applied:
            _record_updates(
                session, actor, None, ("keg_fills", fill, fill_before), ("kegs", keg, keg_before)
            )

        log_operation(
            logger,
            operation,
            "success",
            applied=[fill.id for fill, _, _, _ in applied],
            skipped=[item["keg_fill_id"] for item in skipped],
        )
        position = {fill_id: index for index, fill_id in enumerate(ordered_ids)}
        return {
            "applied": [
                fill_to_dict(fill)
                for fill, _, _, _ in sorted(applied, key=lambda item: position[item[0].id])
            ],
            "skipped": sorted(skipped, key=lambda item: position[item["keg_fill_id"]]),
        }


def bulk_distribute(
    fill_ids: Iterable[int],
    request: Union[DistributeRequest, Dict[str, Any]],
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Distribute many fills to one location.

    Returns:
        {"applied": [fill dicts], "skipped": [{"keg_fill_id", "code", "reason"}]}
    """
    if isinstance(request, dict):
        request = DistributeRequest(**request)
    return _bulk(
        "bulk_distribute", fill_ids, _check_distribute, _apply_distribute, request, actor, session
    )


def bulk_return(
    fill_ids: Iterable[int],
    request: Union[ReturnRequest, Dict[str, Any], None] = None,
    *,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Record many kegs coming back.

    Returns:
        {"applied": [fill dicts], "skipped": [{"keg_fill_id", "code", "reason"}]}
    """
    if request is None:
        request = ReturnRequest()
    elif isinstance(request, dict):
        request = ReturnRequest(**request)
    return _bulk("bulk_return", fill_ids, _check_return, _apply_return, request, actor, session)


# ============================================================================
# Queries
# ============================================================================


def get_fill(fill_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get a fill with its packaging materials.

    Raises:
        KegFillNotFound: If the fill is absent or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return fill_to_dict(_load_fill(session, fill_id), include_materials=True)
