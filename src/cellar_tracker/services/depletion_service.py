"""
Purchase Depletion Tracker.

Computes how much of a purchased lot is still available:

    consumed  = Σ production-run loads drawn from the line
              + Σ packaging materials used by non-voided keg fills
    available = total - consumed   (never below zero)

Production runs and keg fills call consume() inside their own
transaction before writing their consumption records; it locks the line,
re-checks availability and stamps depleted_at when the line runs out.
That stamp is the only change the ledger ever makes to a purchase line.
"""

from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from cellar_tracker.models import (
    KegFill,
    KegFillMaterial,
    KegFillStatus,
    ProductionRunLoad,
    PurchaseItemType,
    PurchaseLineItem,
)
from cellar_tracker.models.enums import DepletionStatus
from cellar_tracker.utils.config import get_config
from cellar_tracker.utils.constants import PERCENT_QUANTUM
from cellar_tracker.utils.datetime_utils import utc_now

from .database import session_scope
from .exceptions import InsufficientQuantity, PurchaseLineItemNotFound, ValidationError
from .logging_utils import get_service_logger, log_operation, log_rejection
from .unit_converter import convert

logger = get_service_logger(__name__)

ZERO = Decimal("0")


# ============================================================================
# Pure helpers
# ============================================================================


def derive_status(
    total: Decimal,
    consumed: Decimal,
    deleted: bool,
    tolerance: Optional[Decimal] = None,
) -> DepletionStatus:
    """
    Derive a line's depletion status.

    Args:
        total: Purchased quantity
        consumed: Quantity drawn so far
        deleted: Whether the line is soft-deleted
        tolerance: Remaining quantity still counted as depleted
            (default: Config.depletion_tolerance)

    Returns:
        ARCHIVED if deleted, otherwise ACTIVE (nothing consumed),
        DEPLETED (remaining within tolerance) or PARTIALLY_DEPLETED
    """
    if deleted:
        return DepletionStatus.ARCHIVED
    if consumed <= 0:
        return DepletionStatus.ACTIVE
    if tolerance is None:
        tolerance = get_config().depletion_tolerance
    if total - consumed <= tolerance:
        return DepletionStatus.DEPLETED
    return DepletionStatus.PARTIALLY_DEPLETED


def _available_pct(total: Decimal, available: Decimal) -> Decimal:
    if total <= 0:
        return ZERO.quantize(PERCENT_QUANTUM)
    return (available / total * 100).quantize(PERCENT_QUANTUM)


# ============================================================================
# Queries
# ============================================================================


def load_line(session: Session, line_item_id: int, lock: bool = False) -> PurchaseLineItem:
    query = session.query(PurchaseLineItem).filter(
        PurchaseLineItem.id == line_item_id, PurchaseLineItem.not_deleted()
    )
    if lock:
        query = query.with_for_update()
    line = query.first()
    if line is None:
        raise PurchaseLineItemNotFound(line_item_id)
    return line


def consumed_quantity(session: Session, line_item_id: int) -> Decimal:
    """Sum of every live consumption record drawn from a purchase line."""
    loads = (
        session.query(ProductionRunLoad.quantity)
        .filter(
            ProductionRunLoad.purchase_line_item_id == line_item_id,
            ProductionRunLoad.not_deleted(),
        )
        .all()
    )
    materials = (
        session.query(KegFillMaterial.quantity_used)
        .join(KegFill, KegFill.id == KegFillMaterial.keg_fill_id)
        .filter(
            KegFillMaterial.purchase_line_item_id == line_item_id,
            KegFillMaterial.not_deleted(),
            KegFill.not_deleted(),
            KegFill.status != KegFillStatus.VOIDED,
        )
        .all()
    )
    # Decimal columns are stored as strings, so the sum happens here
    total = sum((row[0] for row in loads), ZERO)
    return total + sum((row[0] for row in materials), ZERO)


def _availability(session: Session, line: PurchaseLineItem) -> Dict[str, Any]:
    total = line.quantity
    consumed = consumed_quantity(session, line.id)
    available = max(total - consumed, ZERO)
    return {
        "line_item_id": line.id,
        "total_quantity": total,
        "consumed_quantity": consumed,
        "available_quantity": available,
        "available_pct": _available_pct(total, available),
        "unit": line.unit,
        "status": derive_status(total, consumed, line.is_deleted).value,
    }


def get_availability(line_item_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Report how much of a purchase line is still available.

    Args:
        line_item_id: Purchase line ID
        session: Optional database session

    Returns:
        Dict with keys line_item_id, total_quantity, consumed_quantity,
        available_quantity, available_pct, unit and status

    Raises:
        PurchaseLineItemNotFound: If the line is absent or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return _availability(session, load_line(session, line_item_id))


def _requested_in_line_unit(line: PurchaseLineItem, requested: Decimal, unit: Optional[str]):
    if unit is None:
        return Decimal(requested)
    try:
        return convert(requested, unit, line.unit)
    except ValueError as e:
        raise ValidationError([f"purchase line {line.id}: {e}"]) from e


def check_availability(
    line_item_id: int,
    requested: Decimal,
    unit: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Gate a draw against a purchase line without recording it.

    Args:
        line_item_id: Purchase line ID
        requested: Quantity wanted
        unit: Unit of requested (default: the line's unit)
        session: Optional database session

    Returns:
        The line's availability dict

    Raises:
        PurchaseLineItemNotFound: If the line is absent or soft-deleted
        InsufficientQuantity: If requested exceeds the available quantity
        ValidationError: If unit cannot convert to the line's unit
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        line = load_line(session, line_item_id)
        availability = _availability(session, line)
        quantity = _requested_in_line_unit(line, requested, unit)
        if quantity > availability["available_quantity"]:
            raise InsufficientQuantity(
                line.id, quantity, availability["available_quantity"], line.unit
            )
        return availability


def consume(
    session: Session,
    line_item_id: int,
    requested: Decimal,
    unit: Optional[str] = None,
) -> Decimal:
    """
    Lock a purchase line and reserve a draw inside the caller's transaction.

    The caller writes the consumption record (load or fill material) for
    the returned quantity in the same transaction. The line's updated_at is
    always touched so its version counter moves and a concurrent draw on
    the same line fails on flush instead of double-spending it.

    Args:
        session: The caller's session
        line_item_id: Purchase line ID
        requested: Quantity to draw
        unit: Unit of requested (default: the line's unit)

    Returns:
        The drawn quantity converted to the line's unit

    Raises:
        PurchaseLineItemNotFound: If the line is absent or soft-deleted
        InsufficientQuantity: If requested exceeds the available quantity
    """
    line = load_line(session, line_item_id, lock=True)
    quantity = _requested_in_line_unit(line, requested, unit)
    consumed = consumed_quantity(session, line.id)
    available = max(line.quantity - consumed, ZERO)

    if quantity > available:
        error = InsufficientQuantity(line.id, quantity, available, line.unit)
        log_rejection(logger, "consume", error, line_item_id=line.id)
        raise error

    now = utc_now()
    if derive_status(line.quantity, consumed + quantity, False) is DepletionStatus.DEPLETED:
        line.depleted_at = line.depleted_at or now
    line.updated_at = now

    log_operation(
        logger,
        operation="consume",
        outcome="success",
        line_item_id=line.id,
        quantity=str(quantity),
        unit=line.unit,
    )
    return quantity


def refresh_depletion(session: Session, line_item_id: int) -> None:
    """
    Re-derive depleted_at after consumption records were released.

    Called when a production run is cancelled or a keg fill voided.
    """
    line = load_line(session, line_item_id, lock=True)
    status = derive_status(line.quantity, consumed_quantity(session, line.id), False)
    if status is DepletionStatus.DEPLETED:
        line.depleted_at = line.depleted_at or utc_now()
    else:
        line.depleted_at = None
    line.updated_at = utc_now()


def list_available(
    item_type: Optional[PurchaseItemType] = None,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    List live purchase lines that still have quantity available.

    Args:
        item_type: Optional filter (base_fruit, juice, packaging)
        session: Optional database session

    Returns:
        Availability dicts, ordered by line ID
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(PurchaseLineItem).filter(PurchaseLineItem.not_deleted())
        if item_type is not None:
            query = query.filter(PurchaseLineItem.item_type == PurchaseItemType(item_type))
        results = []
        for line in query.order_by(PurchaseLineItem.id).all():
            availability = _availability(session, line)
            if availability["available_quantity"] > 0:
                results.append(availability)
        return results
