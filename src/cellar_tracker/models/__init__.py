"""
Database models package.

This package contains all SQLAlchemy ORM models for the cellar ledger.
"""

from .base import Base, BaseModel, DecimalString, SoftDeleteMixin
from .purchase import Purchase, PurchaseLineItem
from .production_run import ProductionRun, ProductionRunLoad
from .vessel import Vessel
from .batch import Batch
from .batch_composition import BatchComposition
from .batch_transfer import BatchTransfer, BLEND_NOTE_PREFIX
from .keg import Keg
from .keg_fill import KegFill, KegFillMaterial
from .enums import (
    ACTIVE_FILL_STATUSES,
    OCCUPIED_VESSEL_STATUSES,
    VESSEL_TRANSITIONS,
    BatchStage,
    BatchStatus,
    CompositionSourceType,
    DepletionStatus,
    DistributionChannel,
    KegCondition,
    KegFillStatus,
    KegStatus,
    KegType,
    ProductionRunStatus,
    PurchaseItemType,
    TransferType,
    VesselStatus,
)

__all__ = [
    "Base",
    "BaseModel",
    "DecimalString",
    "SoftDeleteMixin",
    # Purchasing
    "Purchase",
    "PurchaseLineItem",
    "ProductionRun",
    "ProductionRunLoad",
    # Cellar
    "Vessel",
    "Batch",
    "BatchComposition",
    "BatchTransfer",
    "BLEND_NOTE_PREFIX",
    # Packaging
    "Keg",
    "KegFill",
    "KegFillMaterial",
    # Enums
    "ACTIVE_FILL_STATUSES",
    "OCCUPIED_VESSEL_STATUSES",
    "VESSEL_TRANSITIONS",
    "BatchStage",
    "BatchStatus",
    "CompositionSourceType",
    "DepletionStatus",
    "DistributionChannel",
    "KegCondition",
    "KegFillStatus",
    "KegStatus",
    "KegType",
    "ProductionRunStatus",
    "PurchaseItemType",
    "TransferType",
    "VesselStatus",
]
