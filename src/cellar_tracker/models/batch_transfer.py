"""
BatchTransfer model - immutable record of one transfer operation.

Rows are written once by the transfer engine and never changed afterward.
ORM before_update / before_delete listeners reject any attempt to modify
or remove a flushed transfer, so the provenance trail stays durable.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
    event,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import TransferType
from cellar_tracker.utils.datetime_utils import utc_now

BLEND_NOTE_PREFIX = "BLEND:"


class BatchTransfer(SoftDeleteMixin, BaseModel):
    """
    BatchTransfer model.

    Attributes:
        transfer_type: move or blend
        source_batch_id / source_vessel_id: Where the liquid came from
        destination_batch_id / destination_vessel_id: Where it went
        remaining_batch_id: Batch left behind in the source vessel, if any
        volume_transferred: Volume that arrived at the destination (L)
        loss: Recorded loss, after tolerance adjustment (L)
        total_volume_processed: volume_transferred + loss (L)
        remaining_volume: Volume left in the source vessel, if any (L)
        notes: Free text; blends are prefixed with "BLEND:"
        transferred_by: Actor who performed the transfer
        transferred_at: When the transfer happened
    """

    __tablename__ = "batch_transfers"

    transfer_type = Column(enum_type(TransferType), nullable=False)
    source_batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False
    )
    source_vessel_id = Column(
        Integer, ForeignKey("vessels.id", ondelete="RESTRICT"), nullable=False
    )
    destination_batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False
    )
    destination_vessel_id = Column(
        Integer, ForeignKey("vessels.id", ondelete="RESTRICT"), nullable=False
    )
    remaining_batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=True
    )
    volume_transferred = Column(DecimalString, nullable=False)
    loss = Column(DecimalString, nullable=False)
    total_volume_processed = Column(DecimalString, nullable=False)
    remaining_volume = Column(DecimalString, nullable=True)
    notes = Column(Text, nullable=True)
    transferred_by = Column(String(100), nullable=True)
    transferred_at = Column(DateTime, nullable=False, default=utc_now)

    source_batch = relationship("Batch", foreign_keys=[source_batch_id])
    destination_batch = relationship("Batch", foreign_keys=[destination_batch_id])
    remaining_batch = relationship("Batch", foreign_keys=[remaining_batch_id])

    __table_args__ = (
        Index("idx_transfer_source_vessel", "source_vessel_id"),
        Index("idx_transfer_destination_vessel", "destination_vessel_id"),
        Index("idx_transfer_transferred_at", "transferred_at"),
    )

    @property
    def is_blend(self) -> bool:
        return self.transfer_type == TransferType.BLEND


@event.listens_for(BatchTransfer, "before_update")
def _reject_transfer_update(mapper, connection, target):
    from cellar_tracker.services.exceptions import ImmutableRecordError

    raise ImmutableRecordError("batch_transfers", target.id, "update")


@event.listens_for(BatchTransfer, "before_delete")
def _reject_transfer_delete(mapper, connection, target):
    from cellar_tracker.services.exceptions import ImmutableRecordError

    raise ImmutableRecordError("batch_transfers", target.id, "delete")
