"""
ProductionRun model for tracking press / juicing runs.

A production run draws loads from purchase lines (fruit by weight or
juice by volume) and, on completion, yields one or more batches in
vessels. Loads are the consumption records the depletion tracker sums.
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
from .enums import ProductionRunStatus
from cellar_tracker.utils.datetime_utils import utc_now


class ProductionRun(SoftDeleteMixin, BaseModel):
    """
    ProductionRun model.

    Attributes:
        run_number: Human-readable run identifier
        status: in_progress, completed or cancelled
        started_at: When the run started
        completed_at: When the run was completed
        yield_volume: Liters of juice produced (set on completion)
        notes: Optional notes
        created_by: Actor who started the run
    """

    __tablename__ = "production_runs"

    run_number = Column(String(50), nullable=False, unique=True)
    status = Column(
        enum_type(ProductionRunStatus), nullable=False, default=ProductionRunStatus.IN_PROGRESS
    )
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)
    yield_volume = Column(DecimalString, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)

    loads = relationship(
        "ProductionRunLoad", back_populates="production_run", order_by="ProductionRunLoad.id"
    )
    batches = relationship("Batch", back_populates="origin_production_run")


class ProductionRunLoad(SoftDeleteMixin, BaseModel):
    """
    One load drawn from a purchase line into a production run.

    Attributes:
        production_run_id: Parent run
        purchase_line_item_id: Line the material was drawn from
        quantity: Amount drawn, in the purchase line's unit
        unit: Copy of the line's unit at load time
    """

    __tablename__ = "production_run_loads"

    production_run_id = Column(
        Integer, ForeignKey("production_runs.id", ondelete="RESTRICT"), nullable=False
    )
    purchase_line_item_id = Column(
        Integer, ForeignKey("purchase_line_items.id", ondelete="RESTRICT"), nullable=False
    )
    quantity = Column(DecimalString, nullable=False)
    unit = Column(String(20), nullable=False)

    production_run = relationship("ProductionRun", back_populates="loads")
    line_item = relationship("PurchaseLineItem", back_populates="production_loads")

    __table_args__ = (
        Index("idx_production_load_run", "production_run_id"),
        Index("idx_production_load_line", "purchase_line_item_id"),
    )
