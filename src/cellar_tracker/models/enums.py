"""
Enumerations for the cellar ledger.

This module contains the status enums and their transition tables:
- VesselStatus / VESSEL_TRANSITIONS: holding tank lifecycle
- BatchStatus / BatchStage: liquid lifecycle and activity
- KegStatus / KegFillStatus: container fill lifecycle
- CompositionSourceType, PurchaseItemType, DepletionStatus
- ProductionRunStatus, TransferType
"""

from enum import Enum
from typing import Dict, FrozenSet


class VesselStatus(str, Enum):
    """
    Holding tank status.

    Values:
        AVAILABLE: Clean and empty, may receive a new batch
        FERMENTING: Holds an actively fermenting batch
        OCCUPIED: Holds a batch (conditioning or otherwise at rest)
        AGING: Holds a batch being aged
        CLEANING: Emptied, must be cleaned before reuse
        MAINTENANCE: Out of service
    """

    AVAILABLE = "available"
    FERMENTING = "fermenting"
    OCCUPIED = "occupied"
    AGING = "aging"
    CLEANING = "cleaning"
    MAINTENANCE = "maintenance"

    @property
    def is_occupied(self) -> bool:
        return self in OCCUPIED_VESSEL_STATUSES


OCCUPIED_VESSEL_STATUSES: FrozenSet[VesselStatus] = frozenset(
    {VesselStatus.FERMENTING, VesselStatus.OCCUPIED, VesselStatus.AGING}
)

VESSEL_TRANSITIONS: Dict[VesselStatus, FrozenSet[VesselStatus]] = {
    VesselStatus.AVAILABLE: frozenset(
        {
            VesselStatus.FERMENTING,
            VesselStatus.OCCUPIED,
            VesselStatus.AGING,
            VesselStatus.CLEANING,
            VesselStatus.MAINTENANCE,
        }
    ),
    VesselStatus.FERMENTING: frozenset(
        {VesselStatus.OCCUPIED, VesselStatus.AGING, VesselStatus.CLEANING}
    ),
    VesselStatus.OCCUPIED: frozenset(
        {VesselStatus.FERMENTING, VesselStatus.AGING, VesselStatus.CLEANING}
    ),
    VesselStatus.AGING: frozenset(
        {VesselStatus.FERMENTING, VesselStatus.OCCUPIED, VesselStatus.CLEANING}
    ),
    VesselStatus.CLEANING: frozenset({VesselStatus.AVAILABLE, VesselStatus.MAINTENANCE}),
    VesselStatus.MAINTENANCE: frozenset({VesselStatus.AVAILABLE, VesselStatus.CLEANING}),
}


class BatchStatus(str, Enum):
    """
    Batch lifecycle status.

    Values:
        ACTIVE: Liquid in a vessel, may be transferred, blended or packaged
        COMPLETED: Packaged out or otherwise finished (closed)
        BLENDED: Merged into another batch by a transfer (closed)
        DISCARDED: Purged from its vessel (closed)
    """

    ACTIVE = "active"
    COMPLETED = "completed"
    BLENDED = "blended"
    DISCARDED = "discarded"

    @property
    def is_closed(self) -> bool:
        return self is not BatchStatus.ACTIVE


class BatchStage(str, Enum):
    """
    Activity of an active batch; decides which occupied status its vessel shows.
    """

    FERMENTING = "fermenting"
    AGING = "aging"
    CONDITIONING = "conditioning"

    @property
    def vessel_status(self) -> VesselStatus:
        if self is BatchStage.FERMENTING:
            return VesselStatus.FERMENTING
        if self is BatchStage.AGING:
            return VesselStatus.AGING
        return VesselStatus.OCCUPIED


class TransferType(str, Enum):
    """Kind of liquid movement recorded on a BatchTransfer."""

    MOVE = "move"
    BLEND = "blend"


class KegType(str, Enum):
    """Keg formats in service."""

    CORNELIUS_5L = "cornelius_5L"
    CORNELIUS_9L = "cornelius_9L"
    SANKE_20L = "sanke_20L"
    SANKE_30L = "sanke_30L"
    SANKE_50L = "sanke_50L"
    OTHER = "other"


class KegCondition(str, Enum):
    """Physical condition of a keg."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    NEEDS_REPAIR = "needs_repair"
    RETIRED = "retired"


class KegStatus(str, Enum):
    """
    Keg (container) status.

    Values:
        AVAILABLE: Clean and empty, may be filled
        FILLED: Holds liquid from an active fill
        DISTRIBUTED: Out at a customer location
        CLEANING: Returned, waiting to be cleaned
        MAINTENANCE: Out of service
        RETIRED: Removed from the fleet (soft-deleted)
    """

    AVAILABLE = "available"
    FILLED = "filled"
    DISTRIBUTED = "distributed"
    CLEANING = "cleaning"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class KegFillStatus(str, Enum):
    """
    Status of one filling of a keg.

    RETURNED and VOIDED are terminal.
    """

    FILLED = "filled"
    READY = "ready"
    DISTRIBUTED = "distributed"
    RETURNED = "returned"
    VOIDED = "voided"

    @property
    def is_terminal(self) -> bool:
        return self in (KegFillStatus.RETURNED, KegFillStatus.VOIDED)


ACTIVE_FILL_STATUSES: FrozenSet[KegFillStatus] = frozenset(
    {KegFillStatus.FILLED, KegFillStatus.READY, KegFillStatus.DISTRIBUTED}
)


class DistributionChannel(str, Enum):
    """Where a distributed keg went."""

    TAPROOM = "taproom"
    WHOLESALE = "wholesale"
    RETAIL = "retail"
    EVENT = "event"
    OTHER = "other"


class PurchaseItemType(str, Enum):
    """Kind of purchased material on a purchase line."""

    BASE_FRUIT = "base_fruit"
    JUICE = "juice"
    PACKAGING = "packaging"


class CompositionSourceType(str, Enum):
    """Provenance source kinds recorded on batch composition rows."""

    BASE_FRUIT = "base_fruit"
    JUICE_PURCHASE = "juice_purchase"

    @classmethod
    def for_item_type(cls, item_type: PurchaseItemType) -> "CompositionSourceType":
        if item_type is PurchaseItemType.BASE_FRUIT:
            return cls.BASE_FRUIT
        if item_type is PurchaseItemType.JUICE:
            return cls.JUICE_PURCHASE
        raise ValueError(f"Purchase items of type '{item_type.value}' are not liquid sources")


class DepletionStatus(str, Enum):
    """
    Derived consumption status of a purchase line.

    Values:
        ACTIVE: Nothing consumed yet
        PARTIALLY_DEPLETED: Some, but not all, consumed
        DEPLETED: Fully consumed (within rounding tolerance)
        ARCHIVED: Soft-deleted, regardless of consumption
    """

    ACTIVE = "active"
    PARTIALLY_DEPLETED = "partially_depleted"
    DEPLETED = "depleted"
    ARCHIVED = "archived"


class ProductionRunStatus(str, Enum):
    """Production (press) run lifecycle."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
