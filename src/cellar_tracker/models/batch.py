"""
Batch model for liquid with continuous identity.

A batch keeps its identity across moves between vessels. It ends when it
is completed (packaged out), blended into another batch, or discarded.
Partial transfers leave behind a new "remaining" batch.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import BatchStage, BatchStatus
from cellar_tracker.utils.constants import LEDGER_VOLUME_UNIT
from cellar_tracker.utils.datetime_utils import utc_now


class Batch(SoftDeleteMixin, BaseModel):
    """
    Batch model.

    Attributes:
        name: Display name
        batch_number: Batch number; remaining batches append "-R"
        vessel_id: Vessel currently holding the batch (None once closed)
        initial_volume: Volume when the batch was created (L)
        current_volume: Volume now (L); never negative
        current_volume_unit: Always the ledger unit
        status: BatchStatus
        stage: BatchStage while active
        start_date / end_date: Lifetime of the batch
        origin_production_run_id: Run that produced the liquid
        parent_batch_id: Batch this one was split from
        version: Optimistic lock counter
    """

    __tablename__ = "batches"

    name = Column(String(200), nullable=False)
    batch_number = Column(String(100), nullable=False)
    vessel_id = Column(
        Integer, ForeignKey("vessels.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    initial_volume = Column(DecimalString, nullable=False)
    current_volume = Column(DecimalString, nullable=False)
    current_volume_unit = Column(String(20), nullable=False, default=LEDGER_VOLUME_UNIT)
    status = Column(enum_type(BatchStatus), nullable=False, default=BatchStatus.ACTIVE)
    stage = Column(enum_type(BatchStage), nullable=False, default=BatchStage.FERMENTING)
    start_date = Column(DateTime, nullable=False, default=utc_now)
    end_date = Column(DateTime, nullable=True)
    origin_production_run_id = Column(
        Integer, ForeignKey("production_runs.id", ondelete="RESTRICT"), nullable=True
    )
    # NO ACTION: SQLite checks RESTRICT per row, which breaks DROP TABLE on split chains
    parent_batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True)
    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    vessel = relationship("Vessel", back_populates="batches")
    origin_production_run = relationship("ProductionRun", back_populates="batches")
    parent_batch = relationship("Batch", remote_side="Batch.id")
    compositions = relationship(
        "BatchComposition",
        back_populates="batch",
        order_by="BatchComposition.id",
        cascade="save-update, merge",
    )
    keg_fills = relationship("KegFill", back_populates="batch")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_batch_vessel_status", "vessel_id", "status"),
        Index("idx_batch_number", "batch_number"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == BatchStatus.ACTIVE and self.deleted_at is None

    @property
    def live_compositions(self):
        """Composition rows that are not soft-deleted."""
        return [row for row in self.compositions if row.deleted_at is None]
