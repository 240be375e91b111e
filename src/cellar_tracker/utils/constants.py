"""
Constants for the Cellar Tracker application.

This module defines system-wide constants including:
- Application metadata
- The ledger volume unit
- Decimal precision used by the ledger
- Default ledger settings (overridable through Config)
"""

from decimal import Decimal
from typing import Dict

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Cellar Tracker"
APP_VERSION = "0.1.0"
DATABASE_FILENAME = "cellar_tracker.db"
DATABASE_VERSION = "1.0"

# ============================================================================
# Units
# ============================================================================

# Canonical unit for all batch, transfer and fill volumes
LEDGER_VOLUME_UNIT = "L"

# ============================================================================
# Decimal Precision
# ============================================================================

# Composition volumes and costs are quantized to this step
VOLUME_QUANTUM = Decimal("0.0001")
COST_QUANTUM = Decimal("0.0001")

# Composition fractions are quantized to this step before normalization
FRACTION_QUANTUM = Decimal("0.00000001")

# Percentages reported by the depletion tracker
PERCENT_QUANTUM = Decimal("0.01")

# ============================================================================
# Ledger Defaults
# ============================================================================

# Rounding slack accepted on transfers, folded into recorded loss
DEFAULT_TRANSFER_TOLERANCE = Decimal("0.1")

# A batch drawn down to this volume (L) or below is completed
DEFAULT_MIN_WORKING_VOLUME = Decimal("5")

# Remaining quantity (in the line's unit) at or below which a line is depleted
DEFAULT_DEPLETION_TOLERANCE = Decimal("0.01")

# Allowed deviation of summed composition fractions from 1
DEFAULT_FRACTION_TOLERANCE = Decimal("0.000001")

# Slack allowed when assigning production-run yield to vessels (L)
DEFAULT_ASSIGNMENT_TOLERANCE = Decimal("0.001")

# ============================================================================
# Kegs
# ============================================================================

DEFAULT_KEG_LOCATION = "cellar"

KEG_TYPE_CAPACITY_L: Dict[str, Decimal] = {
    "cornelius_5L": Decimal("5"),
    "cornelius_9L": Decimal("9"),
    "sanke_20L": Decimal("20"),
    "sanke_30L": Decimal("30"),
    "sanke_50L": Decimal("50"),
}

# ============================================================================
# Validation Limits
# ============================================================================

MAX_NAME_LENGTH = 200
MAX_NOTES_LENGTH = 2000
MAX_REASON_LENGTH = 500
