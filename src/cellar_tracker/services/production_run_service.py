"""
Production Run Service - press and juicing runs.

A run is where purchased material turns into liquid:

- start_production_run() draws loads from purchase lines through the
  depletion gate and opens the run (in_progress).
- complete_production_run() records the yield and places it into one or
  more available vessels as new active batches, each with a composition
  allocated from the loads.
- cancel_production_run() releases the loads so the lines' availability
  is restored.
"""

from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    Batch,
    BatchStatus,
    CompositionSourceType,
    ProductionRun,
    ProductionRunLoad,
    ProductionRunStatus,
    PurchaseItemType,
    VesselStatus,
)
from cellar_tracker.utils.config import get_config
from cellar_tracker.utils.datetime_utils import utc_now

from . import audit_service, batch_service, depletion_service, vessel_service
from .composition import AllocationInput, allocate_composition
from .database import flush, session_scope
from .exceptions import (
    ConflictError,
    ExceedsAvailableVolume,
    ExceedsVesselCapacity,
    InvalidStateTransition,
    ProductionRunNotFound,
    ServiceError,
    ValidationError,
    VesselNotAvailable,
)
from .logging_utils import get_service_logger, log_operation, log_rejection
from .requests import CompleteProductionRunRequest, StartProductionRunRequest
from .unit_converter import convert, unit_kind

logger = get_service_logger(__name__)

# Loads are weighed against each other in one base unit per kind
_BASE_UNIT = {"weight": "kg", "volume": "L"}


# ============================================================================
# Helpers
# ============================================================================


def _load_run(session: Session, run_id: int, lock: bool = False) -> ProductionRun:
    query = session.query(ProductionRun).filter(
        ProductionRun.id == run_id, ProductionRun.not_deleted()
    )
    if lock:
        query = query.with_for_update()
    run = query.first()
    if run is None:
        raise ProductionRunNotFound(run_id)
    return run


def _require_in_progress(run: ProductionRun) -> None:
    if run.status != ProductionRunStatus.IN_PROGRESS:
        raise InvalidStateTransition(
            "production_run", run.id, [ProductionRunStatus.IN_PROGRESS], run.status
        )


def _live_loads(run: ProductionRun) -> List[ProductionRunLoad]:
    return [load for load in run.loads if load.deleted_at is None]


def _load_kind(loads: List[ProductionRunLoad]) -> str:
    """The single unit kind (weight or volume) shared by a run's loads."""
    kinds = {unit_kind(load.unit) for load in loads}
    if len(kinds) != 1 or not kinds <= set(_BASE_UNIT):
        raise ValidationError(
            [
                "A production run's loads must all be measured by weight or all by volume, "
                f"got: {sorted(str(kind) for kind in kinds)}"
            ]
        )
    return kinds.pop()


def _load_cost(load: ProductionRunLoad) -> Optional[Decimal]:
    unit_cost = load.line_item.unit_cost
    if unit_cost is None:
        return None
    return load.quantity * unit_cost


def run_to_dict(run: ProductionRun, include_loads: bool = True) -> Dict[str, Any]:
    result = run.to_dict()
    if include_loads:
        result["loads"] = [load.to_dict() for load in _live_loads(run)]
    return result


# ============================================================================
# Operations
# ============================================================================


def start_production_run(
    request: Union[StartProductionRunRequest, Dict[str, Any]],
    actor: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Open a production run and draw its loads from purchase lines.

    Args:
        request: StartProductionRunRequest (or a dict of its fields)
        actor: Who started the run
        session: Optional database session

    Returns:
        Run dictionary with its loads

    Raises:
        ValidationError: If the request is invalid, a line is packaging or
            the loads mix weight and volume
        ConflictError: If the run number is taken
        PurchaseLineItemNotFound: If a line is absent or soft-deleted
        InsufficientQuantity: If any load exceeds its line's availability
    """
    if isinstance(request, dict):
        request = StartProductionRunRequest(**request)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            return _start_impl(session, request, actor)
        except ServiceError as e:
            log_rejection(logger, "start_production_run", e, run_number=request.run_number)
            raise


def _start_impl(session: Session, request: StartProductionRunRequest, actor):
    existing = (
        session.query(ProductionRun.id)
        .filter(ProductionRun.run_number == request.run_number)
        .first()
    )
    if existing is not None:
        raise ConflictError(
            f"Production run '{request.run_number}' already exists",
            field="run_number",
            value=request.run_number,
        )

    # Check every line before drawing from any of them
    errors = []
    kinds = set()
    for load in request.loads:
        line = depletion_service.load_line(session, load.purchase_line_item_id)
        if line.item_type == PurchaseItemType.PACKAGING:
            errors.append(f"purchase line {line.id} is packaging, not a liquid source")
        kinds.add(unit_kind(line.unit))
        if load.unit is not None and unit_kind(load.unit) != unit_kind(line.unit):
            errors.append(
                f"purchase line {line.id}: cannot draw {load.unit} from a line measured in "
                f"{line.unit}"
            )
    if len(kinds) > 1 or not kinds <= set(_BASE_UNIT):
        errors.append("a production run's loads must all be measured by weight or all by volume")
    if errors:
        raise ValidationError(errors)

    quantities = [
        (
            load.purchase_line_item_id,
            depletion_service.consume(
                session, load.purchase_line_item_id, load.quantity, load.unit
            ),
        )
        for load in request.loads
    ]

    run = ProductionRun(
        run_number=request.run_number,
        status=ProductionRunStatus.IN_PROGRESS,
        started_at=request.started_at or utc_now(),
        notes=request.notes,
        created_by=actor,
    )
    session.add(run)
    for line_item_id, quantity in quantities:
        line = depletion_service.load_line(session, line_item_id)
        run.loads.append(
            ProductionRunLoad(purchase_line_item_id=line_item_id, quantity=quantity, unit=line.unit)
        )
    flush(session)

    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="production_runs",
            record_id=run.id,
            operation="create",
            new_data=audit_service.snapshot(run),
            actor=actor,
        ),
    )
    for load in run.loads:
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="production_run_loads",
                record_id=load.id,
                operation="create",
                new_data=audit_service.snapshot(load),
                actor=actor,
            ),
        )
    log_operation(
        logger,
        "start_production_run",
        "success",
        run_id=run.id,
        run_number=run.run_number,
        load_count=len(run.loads),
    )
    return run_to_dict(run)


def complete_production_run(
    request: Union[CompleteProductionRunRequest, Dict[str, Any]],
    actor: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Record a run's yield and fill vessels with it.

    Each assignment becomes a new active batch in an available vessel. The
    batch composition is allocated from the run's loads in proportion to
    their quantity; material cost is pro-rated by the share of the yield
    the batch received.

    Args:
        request: CompleteProductionRunRequest (or a dict of its fields)
        actor: Who completed the run
        session: Optional database session

    Returns:
        Run dictionary with a "batches" list of the created batches

    Raises:
        ProductionRunNotFound: If the run does not exist
        InvalidStateTransition: If the run is not in progress
        ExceedsAvailableVolume: If the assignments exceed the yield
        ValidationError: If the loads mix weight and volume
        VesselNotFound: If a target vessel does not exist
        VesselNotAvailable: If a target vessel is not available
        ExceedsVesselCapacity: If an assignment does not fit its vessel
    """
    if isinstance(request, dict):
        request = CompleteProductionRunRequest(**request)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            return _complete_impl(session, request, actor)
        except ServiceError as e:
            log_rejection(logger, "complete_production_run", e, run_id=request.run_id)
            raise


def _complete_impl(session: Session, request: CompleteProductionRunRequest, actor):
    run = _load_run(session, request.run_id, lock=True)
    _require_in_progress(run)

    tolerance = get_config().assignment_tolerance
    assigned = request.assigned_volume
    if assigned > request.yield_volume + tolerance:
        raise ExceedsAvailableVolume(
            assigned,
            request.yield_volume,
            message=(
                f"Vessel assignments total {assigned} L but the run yielded "
                f"{request.yield_volume} L"
            ),
        )

    loads = _live_loads(run)
    kind = _load_kind(loads)
    base_unit = _BASE_UNIT[kind]

    # Lock target vessels in id order
    vessels = {}
    for assignment in sorted(request.assignments, key=lambda item: item.vessel_id):
        vessel = vessel_service.load_vessel(session, assignment.vessel_id, lock=True)
        occupant = vessel_service.find_active_batch(session, vessel.id)
        if vessel.status != VesselStatus.AVAILABLE or occupant is not None:
            raise VesselNotAvailable(vessel.id, [VesselStatus.AVAILABLE], vessel.status)
        capacity = vessel_service.capacity_liters(vessel)
        if assignment.volume > capacity:
            raise ExceedsVesselCapacity(vessel.id, assignment.volume, capacity)
        vessels[vessel.id] = vessel

    inputs = []
    for load in loads:
        line = load.line_item
        inputs.append(
            (
                CompositionSourceType.for_item_type(line.item_type),
                line,
                convert(load.quantity, load.unit, base_unit),
                _load_cost(load),
            )
        )

    multiple = len(request.assignments) > 1
    created = []
    for index, assignment in enumerate(request.assignments, start=1):
        vessel = vessels[assignment.vessel_id]
        share_of_yield = assignment.volume / request.yield_volume
        composition = allocate_composition(
            [
                AllocationInput(
                    source_type=source_type,
                    source_id=line.id,
                    vendor_id=line.vendor_id,
                    lot_code=line.lot_code,
                    weight=weight,
                    material_cost=cost * share_of_yield if cost is not None else None,
                )
                for source_type, line, weight, cost in inputs
            ],
            assignment.volume,
        )
        batch_number = f"{run.run_number}-{index}" if multiple else run.run_number
        batch = Batch(
            name=assignment.batch_name or batch_number,
            batch_number=batch_number,
            vessel_id=vessel.id,
            initial_volume=assignment.volume,
            current_volume=assignment.volume,
            status=BatchStatus.ACTIVE,
            stage=assignment.stage,
            start_date=utc_now(),
            origin_production_run_id=run.id,
            notes=request.notes,
        )
        batch_service.write_composition(session, batch, composition)
        session.add(batch)
        vessel_before = audit_service.snapshot(vessel)
        vessel_service.transition_vessel(vessel, assignment.stage.vessel_status)
        created.append((batch, vessel, vessel_before))

    run_before = audit_service.snapshot(run)
    run.status = ProductionRunStatus.COMPLETED
    run.completed_at = utc_now()
    run.yield_volume = request.yield_volume
    if request.notes:
        run.notes = f"{run.notes}\n{request.notes}" if run.notes else request.notes
    flush(session)

    for batch, vessel, vessel_before in created:
        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="batches",
                record_id=batch.id,
                operation="create",
                new_data=audit_service.snapshot(batch),
                actor=actor,
                reason=f"production run {run.run_number}",
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
                reason=f"production run {run.run_number}",
            ),
        )
    audit_service.record_event(
        session,
        audit_service.AuditEvent(
            table_name="production_runs",
            record_id=run.id,
            operation="update",
            old_data=run_before,
            new_data=audit_service.snapshot(run),
            actor=actor,
        ),
    )

    log_operation(
        logger,
        "complete_production_run",
        "success",
        run_id=run.id,
        yield_volume=str(request.yield_volume),
        batch_ids=[batch.id for batch, _, _ in created],
    )
    result = run_to_dict(run)
    result["batches"] = [
        batch_service.batch_to_dict(batch, include_composition=True) for batch, _, _ in created
    ]
    return result


def cancel_production_run(
    run_id: int,
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Cancel an in-progress run and give its loads back to their lines.

    Raises:
        ProductionRunNotFound: If the run does not exist
        InvalidStateTransition: If the run is not in progress
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        run = _load_run(session, run_id, lock=True)
        try:
            _require_in_progress(run)
        except ServiceError as e:
            log_rejection(logger, "cancel_production_run", e, run_id=run.id)
            raise

        before = audit_service.snapshot(run)
        loads = _live_loads(run)
        for load in loads:
            load.soft_delete()
        run.status = ProductionRunStatus.CANCELLED
        flush(session)
        for line_item_id in sorted({load.purchase_line_item_id for load in loads}):
            depletion_service.refresh_depletion(session, line_item_id)
        flush(session)

        audit_service.record_event(
            session,
            audit_service.AuditEvent(
                table_name="production_runs",
                record_id=run.id,
                operation="update",
                old_data=before,
                new_data=audit_service.snapshot(run),
                actor=actor,
                reason=reason,
            ),
        )
        log_operation(
            logger, "cancel_production_run", "success", run_id=run.id, released_loads=len(loads)
        )
        return run_to_dict(run)


def get_production_run(run_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get a production run with its live loads.

    Raises:
        ProductionRunNotFound: If the run is absent or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return run_to_dict(_load_run(session, run_id))
