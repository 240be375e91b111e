"""
Configuration for Cellar Tracker.

Two concerns live here:
- Where the ledger database is (production keeps it in the user's
  Documents folder, development in the project's data/ directory, and
  CELLAR_TRACKER_DATABASE_URL overrides both)
- The ledger's tunable tolerances, read once per Config from
  CELLAR_TRACKER_* environment variables with defaults from constants.py

get_config() returns a process-wide instance. Tests call reset_config()
to pick up a changed environment.
"""

import logging
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from .constants import (
    APP_NAME,
    APP_VERSION,
    DATABASE_FILENAME,
    DATABASE_VERSION,
    DEFAULT_ASSIGNMENT_TOLERANCE,
    DEFAULT_DEPLETION_TOLERANCE,
    DEFAULT_FRACTION_TOLERANCE,
    DEFAULT_MIN_WORKING_VOLUME,
    DEFAULT_TRANSFER_TOLERANCE,
)

logger = logging.getLogger(__name__)

ENV_VAR = "CELLAR_TRACKER_ENV"
DATABASE_URL_VAR = "CELLAR_TRACKER_DATABASE_URL"
TRANSFER_TOLERANCE_VAR = "CELLAR_TRACKER_TRANSFER_TOLERANCE"
MIN_WORKING_VOLUME_VAR = "CELLAR_TRACKER_MIN_WORKING_VOLUME"
DEPLETION_TOLERANCE_VAR = "CELLAR_TRACKER_DEPLETION_TOLERANCE"

PRODUCTION = "production"
DEVELOPMENT = "development"


def _decimal_setting(var_name: str, default: Decimal) -> Decimal:
    """Read a non-negative Decimal setting from the environment.

    Invalid or negative values are logged and the default is used.
    """
    raw = os.environ.get(var_name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        logger.warning(f"Ignoring invalid {var_name}={raw!r}, using {default}")
        return default
    if not value.is_finite() or value < 0:
        logger.warning(f"Ignoring out-of-range {var_name}={raw!r}, using {default}")
        return default
    return value


def _data_dir(environment: str) -> Path:
    if environment == DEVELOPMENT:
        # <project>/data, next to src/
        return Path(__file__).resolve().parents[3] / "data"
    return Path.home() / "Documents" / "CellarTracker"


class Config:
    """
    Database location and ledger settings for one environment.

    Attributes:
        environment: "production" or "development"
        transfer_tolerance: Liters of over-draw a transfer may absorb as loss
        min_working_volume: Batch volume (L) at or below which a keg fill
            completes the batch
        depletion_tolerance: Remaining quantity still counted as depleted
        fraction_tolerance: Allowed drift of summed composition fractions from 1
        assignment_tolerance: Slack (L) when assigning production yield
    """

    app_name = APP_NAME
    app_version = APP_VERSION
    database_version = DATABASE_VERSION

    def __init__(self, environment: str = PRODUCTION):
        self.environment = environment
        self.data_dir = _data_dir(environment)
        self.database_path = self.data_dir / DATABASE_FILENAME
        self._database_url_override = os.environ.get(DATABASE_URL_VAR)

        self.transfer_tolerance = _decimal_setting(
            TRANSFER_TOLERANCE_VAR, DEFAULT_TRANSFER_TOLERANCE
        )
        self.min_working_volume = _decimal_setting(
            MIN_WORKING_VOLUME_VAR, DEFAULT_MIN_WORKING_VOLUME
        )
        self.depletion_tolerance = _decimal_setting(
            DEPLETION_TOLERANCE_VAR, DEFAULT_DEPLETION_TOLERANCE
        )
        self.fraction_tolerance = DEFAULT_FRACTION_TOLERANCE
        self.assignment_tolerance = DEFAULT_ASSIGNMENT_TOLERANCE

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL; CELLAR_TRACKER_DATABASE_URL wins over the file default."""
        if self._database_url_override:
            return self._database_url_override
        return "sqlite:///" + self.database_path.as_posix()

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def database_exists(self) -> bool:
        return self.database_path.exists()

    def __repr__(self) -> str:
        return (
            f"Config(environment='{self.environment}', "
            f"database_url='{self.database_url}', "
            f"transfer_tolerance={self.transfer_tolerance}, "
            f"min_working_volume={self.min_working_volume})"
        )


_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Return the process-wide Config, creating it on first call.

    The first call picks the environment (argument, else CELLAR_TRACKER_ENV,
    else production). Later calls asking for a different environment get
    the existing instance and a warning, so the database never switches
    underneath open sessions.
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = Config(environment or os.environ.get(ENV_VAR, PRODUCTION))
    elif environment is not None and environment != _config_instance.environment:
        logger.warning(
            f"get_config() called with environment='{environment}' but the "
            f"configuration already uses '{_config_instance.environment}'. "
            f"Returning existing singleton."
        )
    return _config_instance


def reset_config() -> None:
    """Forget the current Config; the next get_config() reads the environment again."""
    global _config_instance
    _config_instance = None
