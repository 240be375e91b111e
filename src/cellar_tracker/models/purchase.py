"""
Purchase and PurchaseLineItem models.

Purchases come from the external vendor catalog; the ledger only reads
their quantities. The one write the ledger makes is stamping depleted_at
when a line is fully consumed by downstream production or packaging.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import PurchaseItemType


class Purchase(SoftDeleteMixin, BaseModel):
    """
    A purchase order from a vendor.

    Attributes:
        vendor_name: Vendor the material came from
        vendor_id: Reference into the external vendor catalog
        purchase_date: Date of purchase
        invoice_number: Invoice reference (generated elsewhere)
        notes: Optional notes
    """

    __tablename__ = "purchases"

    vendor_name = Column(String(200), nullable=False)
    vendor_id = Column(String(36), nullable=True, index=True)
    purchase_date = Column(Date, nullable=False)
    invoice_number = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    line_items = relationship("PurchaseLineItem", back_populates="purchase")


class PurchaseLineItem(SoftDeleteMixin, BaseModel):
    """
    One purchased lot of material.

    Attributes:
        purchase_id: Parent purchase
        item_type: base_fruit, juice or packaging
        description: Variety or item description
        lot_code: Supplier lot code, carried into batch compositions
        quantity: Total purchased quantity (in unit)
        unit: Unit of quantity (kg, lb, bushel, L, gal, each, ...)
        unit_cost: Cost per unit, optional
        depleted_at: Set when the line is fully consumed
        version: Optimistic lock counter

    Consumption is derived from child tables (production run loads and keg
    fill materials); see depletion_service.
    """

    __tablename__ = "purchase_line_items"

    purchase_id = Column(
        Integer, ForeignKey("purchases.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    item_type = Column(enum_type(PurchaseItemType), nullable=False)
    description = Column(String(200), nullable=False)
    lot_code = Column(String(100), nullable=True)
    quantity = Column(DecimalString, nullable=False)
    unit = Column(String(20), nullable=False)
    unit_cost = Column(DecimalString, nullable=True)
    depleted_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    purchase = relationship("Purchase", back_populates="line_items")
    production_loads = relationship("ProductionRunLoad", back_populates="line_item")
    keg_fill_materials = relationship("KegFillMaterial", back_populates="line_item")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_purchase_line_item_type", "item_type"),)

    @property
    def vendor_id(self):
        return self.purchase.vendor_id if self.purchase else None
