"""
KegFill and KegFillMaterial models.

A KegFill is one filling of a keg from a batch. A keg has at most one
active (filled, ready or distributed) fill at a time; returned and voided
fills are terminal. KegFillMaterial rows record packaging drawn from
purchase lines and count as consumption for the depletion tracker while
their fill is not voided.
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
from .enums import ACTIVE_FILL_STATUSES, DistributionChannel, KegFillStatus
from cellar_tracker.utils.datetime_utils import utc_now


class KegFill(SoftDeleteMixin, BaseModel):
    """
    KegFill model.

    Attributes:
        keg_id: Keg that was filled
        batch_id: Batch the liquid came from
        vessel_id: Vessel the batch sat in at fill time
        volume_taken: Liters put in the keg
        remaining_volume: Liters still in the keg (zeroed on return)
        loss: Share of the fill operation's loss attributed to this keg
        status: KegFillStatus
        filled_at / ready_at / distributed_at / returned_at / voided_at:
            Transition timestamps
        distribution_location / distribution_channel: Where the keg went
        void_reason / voided_by: Why and by whom the fill was voided
        created_by: Actor who filled the keg
        version: Optimistic lock counter
    """

    __tablename__ = "keg_fills"

    keg_id = Column(Integer, ForeignKey("kegs.id", ondelete="RESTRICT"), nullable=False)
    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False)
    vessel_id = Column(Integer, ForeignKey("vessels.id", ondelete="RESTRICT"), nullable=False)
    volume_taken = Column(DecimalString, nullable=False)
    remaining_volume = Column(DecimalString, nullable=False)
    loss = Column(DecimalString, nullable=False, default="0")
    status = Column(enum_type(KegFillStatus), nullable=False, default=KegFillStatus.FILLED)

    filled_at = Column(DateTime, nullable=False, default=utc_now)
    ready_at = Column(DateTime, nullable=True)
    distributed_at = Column(DateTime, nullable=True)
    distribution_location = Column(String(200), nullable=True)
    distribution_channel = Column(enum_type(DistributionChannel), nullable=True)
    returned_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(Text, nullable=True)
    voided_by = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    keg = relationship("Keg", back_populates="fills")
    batch = relationship("Batch", back_populates="keg_fills")
    materials = relationship(
        "KegFillMaterial", back_populates="keg_fill", order_by="KegFillMaterial.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_keg_fill_keg_status", "keg_id", "status"),
        Index("idx_keg_fill_batch", "batch_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_FILL_STATUSES and self.deleted_at is None


class KegFillMaterial(SoftDeleteMixin, BaseModel):
    """
    Packaging material consumed by a keg fill.

    Attributes:
        keg_fill_id: Fill that used the material
        purchase_line_item_id: Purchase line the material came from
        quantity_used: Amount used, in the line's unit
        material_type: Free-text kind (cap, collar, label, ...)
    """

    __tablename__ = "keg_fill_materials"

    keg_fill_id = Column(Integer, ForeignKey("keg_fills.id", ondelete="RESTRICT"), nullable=False)
    purchase_line_item_id = Column(
        Integer, ForeignKey("purchase_line_items.id", ondelete="RESTRICT"), nullable=False
    )
    quantity_used = Column(DecimalString, nullable=False)
    material_type = Column(String(50), nullable=True)

    keg_fill = relationship("KegFill", back_populates="materials")
    line_item = relationship("PurchaseLineItem", back_populates="keg_fill_materials")

    __table_args__ = (Index("idx_keg_fill_material_line", "purchase_line_item_id"),)
