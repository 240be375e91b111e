"""
Ledger invariant check.

verify_ledger() scans live records and reports every violation of the
cellar ledger's invariants. It never changes anything; the
`cellar-tracker check` command prints its report.

Each violation is a dict:
    {"check": <check name>, "entity": <table>, "entity_id": <id>, "message": <text>}
"""

from collections import defaultdict
from contextlib import nullcontext
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    ACTIVE_FILL_STATUSES,
    OCCUPIED_VESSEL_STATUSES,
    Batch,
    BatchStatus,
    BatchTransfer,
    KegFill,
    Vessel,
)
from cellar_tracker.utils.config import get_config

from .composition import fraction_total, is_balanced
from .database import session_scope
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

CHECKS = (
    "negative_volume",
    "over_capacity",
    "multiple_active_batches",
    "unbalanced_composition",
    "occupied_without_batch",
    "multiple_active_fills",
    "transfer_volume_mismatch",
)


def _violation(check: str, entity: str, entity_id: int, message: str) -> Dict[str, Any]:
    return {"check": check, "entity": entity, "entity_id": entity_id, "message": message}


def _check_batches(session: Session, violations: List[Dict[str, Any]]) -> None:
    vessels = {
        vessel.id: vessel
        for vessel in session.query(Vessel).filter(Vessel.not_deleted()).all()
    }
    tolerance = get_config().fraction_tolerance

    active_by_vessel = defaultdict(list)
    for batch in session.query(Batch).filter(Batch.not_deleted()).order_by(Batch.id).all():
        if batch.current_volume < 0:
            violations.append(
                _violation(
                    "negative_volume",
                    "batches",
                    batch.id,
                    f"Batch {batch.id} has volume {batch.current_volume} L",
                )
            )
        if batch.status != BatchStatus.ACTIVE:
            continue

        if batch.vessel_id is not None:
            active_by_vessel[batch.vessel_id].append(batch)
            vessel = vessels.get(batch.vessel_id)
            if vessel is not None and batch.current_volume > vessel.capacity_liters:
                violations.append(
                    _violation(
                        "over_capacity",
                        "vessels",
                        vessel.id,
                        f"Vessel {vessel.id} holds {batch.current_volume} L in batch {batch.id}, "
                        f"capacity {vessel.capacity_liters} L",
                    )
                )

        shares = [row.to_share() for row in batch.live_compositions]
        # Batches without provenance rows have nothing to balance
        if shares and not is_balanced(shares, tolerance):
            violations.append(
                _violation(
                    "unbalanced_composition",
                    "batches",
                    batch.id,
                    f"Batch {batch.id} composition fractions sum to {fraction_total(shares)}",
                )
            )

    for vessel_id, batches in sorted(active_by_vessel.items()):
        if len(batches) > 1:
            violations.append(
                _violation(
                    "multiple_active_batches",
                    "vessels",
                    vessel_id,
                    f"Vessel {vessel_id} holds active batches {[batch.id for batch in batches]}",
                )
            )

    for vessel in sorted(vessels.values(), key=lambda item: item.id):
        if vessel.status in OCCUPIED_VESSEL_STATUSES and vessel.id not in active_by_vessel:
            violations.append(
                _violation(
                    "occupied_without_batch",
                    "vessels",
                    vessel.id,
                    f"Vessel {vessel.id} is {vessel.status.value} but holds no active batch",
                )
            )


def _check_fills(session: Session, violations: List[Dict[str, Any]]) -> None:
    active_by_keg = defaultdict(list)
    fills = (
        session.query(KegFill)
        .filter(KegFill.not_deleted(), KegFill.status.in_(list(ACTIVE_FILL_STATUSES)))
        .order_by(KegFill.id)
        .all()
    )
    for fill in fills:
        active_by_keg[fill.keg_id].append(fill.id)
    for keg_id, fill_ids in sorted(active_by_keg.items()):
        if len(fill_ids) > 1:
            violations.append(
                _violation(
                    "multiple_active_fills",
                    "kegs",
                    keg_id,
                    f"Keg {keg_id} has active fills {fill_ids}",
                )
            )


def _check_transfers(session: Session, violations: List[Dict[str, Any]]) -> None:
    transfers = (
        session.query(BatchTransfer)
        .filter(BatchTransfer.not_deleted())
        .order_by(BatchTransfer.id)
        .all()
    )
    for transfer in transfers:
        expected = transfer.volume_transferred + transfer.loss
        if transfer.total_volume_processed != expected:
            violations.append(
                _violation(
                    "transfer_volume_mismatch",
                    "batch_transfers",
                    transfer.id,
                    f"Transfer {transfer.id} processed {transfer.total_volume_processed} L "
                    f"but moved {transfer.volume_transferred} L with {transfer.loss} L loss",
                )
            )


def verify_ledger(*, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """
    Report every ledger invariant violation.

    Checks negative batch volumes, over-capacity vessels, vessels with more
    than one active batch, unbalanced compositions, occupied vessels
    without a batch, kegs with more than one active fill and transfer
    records whose processed volume is not volume plus loss.

    Args:
        session: Optional database session

    Returns:
        List of violation dicts (empty when the ledger is consistent)
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        violations: List[Dict[str, Any]] = []
        _check_batches(session, violations)
        _check_fills(session, violations)
        _check_transfers(session, violations)

        log_operation(
            logger,
            "verify_ledger",
            "clean" if not violations else "violations",
            violation_count=len(violations),
        )
        return violations
