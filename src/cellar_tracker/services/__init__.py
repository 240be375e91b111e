"""Services package - Business logic layer for Cellar Tracker.

This package contains the ledger operations and their infrastructure.

Architecture:
- Services: Stateless functions organized by domain (vessel, batch, transfer, keg, ...)
- Transactions: Managed via session_scope(); every operation accepts session=
- Exceptions: Consistent error handling via the ServiceError hierarchy
- Validation: Request dataclasses validated before database operations
- Audit: Events queued per transaction and published after commit

Service Modules:
- depletion_service: Purchase line availability and the consumption gate
- production_run_service: Press runs producing the initial batches
- vessel_service: Vessel CRUD and status state machine
- batch_service: Batch lifecycle and composition persistence
- transfer_service: Move, split and blend transfers
- keg_service: Keg fleet management
- keg_fill_service: Keg fill, distribution, return and void
- ledger_check_service: Invariant report

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- composition: Pure composition arithmetic
- unit_converter: Unit conversion utilities
- audit_service: Audit event publication
- requests / dto: Request and result structs
"""

from . import (
    database,
    unit_converter,
    audit_service,
    composition,
    depletion_service,
    vessel_service,
    batch_service,
    transfer_service,
    production_run_service,
    keg_service,
    keg_fill_service,
    ledger_check_service,
)

from .database import session_scope
from .exceptions import ServiceError

__all__ = [
    "database",
    "unit_converter",
    "audit_service",
    "composition",
    "depletion_service",
    "vessel_service",
    "batch_service",
    "transfer_service",
    "production_run_service",
    "keg_service",
    "keg_fill_service",
    "ledger_check_service",
    "session_scope",
    "ServiceError",
]
