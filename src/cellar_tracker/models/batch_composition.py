"""
BatchComposition model - provenance of a batch's liquid.

One row per source lot contributing to a batch. Rows are rewritten
proportionally whenever the batch is split, moved, blended or drawn down;
the arithmetic lives in services/composition.py and works on
CompositionShare values, so these rows only convert to and from shares.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import CompositionSourceType


class BatchComposition(SoftDeleteMixin, BaseModel):
    """
    BatchComposition model.

    Attributes:
        batch_id: Batch this row describes
        source_type: base_fruit or juice_purchase
        purchase_line_item_id: Purchase line the liquid came from
        vendor_id: Vendor reference copied from the purchase
        lot_code: Supplier lot code
        volume: Liters of the batch attributed to this source
        fraction_of_batch: volume / batch volume, between 0 and 1
        material_cost: Cost of the source material in this batch
    """

    __tablename__ = "batch_compositions"

    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False)
    source_type = Column(enum_type(CompositionSourceType), nullable=False)
    purchase_line_item_id = Column(
        Integer, ForeignKey("purchase_line_items.id", ondelete="RESTRICT"), nullable=True
    )
    vendor_id = Column(String(36), nullable=True)
    lot_code = Column(String(100), nullable=True)
    volume = Column(DecimalString, nullable=False)
    fraction_of_batch = Column(DecimalString, nullable=False)
    material_cost = Column(DecimalString, nullable=True)

    batch = relationship("Batch", back_populates="compositions")

    __table_args__ = (Index("idx_composition_batch", "batch_id"),)

    def to_share(self):
        """Return this row as an immutable CompositionShare."""
        from cellar_tracker.services.composition import CompositionShare

        return CompositionShare(
            source_type=CompositionSourceType(self.source_type),
            source_id=self.purchase_line_item_id,
            vendor_id=self.vendor_id,
            lot_code=self.lot_code,
            volume=self.volume,
            fraction=self.fraction_of_batch,
            material_cost=self.material_cost,
        )

    def apply_share(self, share) -> None:
        """Overwrite this row's quantities with those of a share."""
        self.volume = share.volume
        self.fraction_of_batch = share.fraction
        self.material_cost = share.material_cost

    @classmethod
    def from_share(cls, share, batch_id=None):
        """Build a new row from a CompositionShare."""
        return cls(
            batch_id=batch_id,
            source_type=share.source_type,
            purchase_line_item_id=share.source_id,
            vendor_id=share.vendor_id,
            lot_code=share.lot_code,
            volume=share.volume,
            fraction_of_batch=share.fraction,
            material_cost=share.material_cost,
        )
