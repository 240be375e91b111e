"""Audit event publication for ledger mutations.

Ledger operations describe each state change as an AuditEvent and queue it
on the session with record_event(). Queued events reach the publisher only
after the enclosing transaction commits; a rollback discards them, so a
rejected operation never publishes anything.

Storage of events is external. The default publisher just logs them;
install a real one with set_publisher().

Usage:
    from cellar_tracker.services import audit_service

    before = audit_service.snapshot(batch)
    batch.current_volume -= volume
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
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from cellar_tracker.utils.datetime_utils import utc_now

from .logging_utils import get_service_logger

logger = get_service_logger(__name__)

_SESSION_KEY = "cellar_tracker.audit_events"

OPERATIONS = ("create", "update", "delete")


@dataclass(frozen=True)
class AuditEvent:
    """One traceable state change.

    Attributes:
        table_name: Table of the changed record
        record_id: Primary key of the changed record
        operation: create, update or delete
        old_data: Snapshot before the change (None for create)
        new_data: Snapshot after the change (None for delete)
        actor: Who caused the change
        reason: Optional free-text cause
        occurred_at: When the change happened
    """

    table_name: str
    record_id: Any
    operation: str
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(f"operation must be one of {OPERATIONS}, got {self.operation!r}")

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["occurred_at"] = self.occurred_at.isoformat()
        return result


Publisher = Callable[[AuditEvent], None]


def _log_publisher(audit_event: AuditEvent) -> None:
    logger.info(
        f"audit {audit_event.operation} {audit_event.table_name}:{audit_event.record_id}",
        extra={"audit_event": audit_event.to_dict()},
    )


_publisher: Publisher = _log_publisher


def set_publisher(publisher: Optional[Publisher]) -> None:
    """Install the publish(event) collaborator. None restores the logging default."""
    global _publisher
    _publisher = publisher if publisher is not None else _log_publisher


def get_publisher() -> Publisher:
    return _publisher


def snapshot(model, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    JSON-safe snapshot of a model's column values.

    Args:
        model: Any BaseModel instance
        fields: Column names to keep (default: all columns)

    Returns:
        Dict of column name to value; Decimals and datetimes become strings
    """
    data = model.to_dict()
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif hasattr(value, "value") and isinstance(value.value, str):
            data[key] = value.value
    if fields is not None:
        wanted = set(fields)
        data = {key: value for key, value in data.items() if key in wanted}
    return data


def record_event(session: Session, audit_event: AuditEvent) -> None:
    """Queue an event for publication when the session's transaction commits.

    Opens the transaction if none is active, so the event belongs to the
    transaction that will commit or discard it.
    """
    if not session.in_transaction():
        session.begin()
    session.info.setdefault(_SESSION_KEY, []).append(audit_event)


def pending_events(session: Session) -> List[AuditEvent]:
    """Events queued on the session and not yet published."""
    return list(session.info.get(_SESSION_KEY, []))


@event.listens_for(Session, "after_commit")
def _publish_after_commit(session: Session) -> None:
    queued = session.info.pop(_SESSION_KEY, [])
    for audit_event in queued:
        try:
            _publisher(audit_event)
        except Exception:
            # The transaction is already committed
            logger.exception(
                f"Audit publisher failed for {audit_event.table_name}:{audit_event.record_id}"
            )


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted(session: Session, transaction) -> None:
    # Runs after after_commit, so anything still queued was never committed:
    # rolled back, or abandoned by close() without a commit
    if transaction.parent is not None:
        return
    dropped = session.info.pop(_SESSION_KEY, [])
    if dropped:
        logger.debug(f"Discarded {len(dropped)} uncommitted audit event(s)")
