"""
Keg model for reusable containers.

A keg cycles through many fills. Its status follows the active fill:
available -> filled -> distributed -> cleaning -> available.
"""

from sqlalchemy import Column, Integer, String, Text, Index
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import KegCondition, KegStatus, KegType
from cellar_tracker.utils.constants import DEFAULT_KEG_LOCATION, LEDGER_VOLUME_UNIT


class Keg(SoftDeleteMixin, BaseModel):
    """
    Keg model.

    Attributes:
        keg_number: Unique keg number painted on the shell
        keg_type: Keg format
        capacity: Capacity in capacity_unit
        capacity_unit: Volume unit of capacity
        status: KegStatus
        condition: KegCondition
        current_location: Where the keg is now
        notes: Optional notes
        version: Optimistic lock counter
    """

    __tablename__ = "kegs"

    keg_number = Column(String(50), nullable=False, unique=True)
    keg_type = Column(enum_type(KegType), nullable=False, default=KegType.OTHER)
    capacity = Column(DecimalString, nullable=False)
    capacity_unit = Column(String(20), nullable=False, default=LEDGER_VOLUME_UNIT)
    status = Column(enum_type(KegStatus), nullable=False, default=KegStatus.AVAILABLE)
    condition = Column(enum_type(KegCondition), nullable=False, default=KegCondition.GOOD)
    current_location = Column(String(200), nullable=False, default=DEFAULT_KEG_LOCATION)
    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    fills = relationship("KegFill", back_populates="keg", order_by="KegFill.id")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_keg_status", "status"),)

    @property
    def capacity_liters(self):
        from cellar_tracker.services.unit_converter import to_liters

        return to_liters(self.capacity, self.capacity_unit)

    def __repr__(self) -> str:
        return f"Keg(id={self.id}, keg_number='{self.keg_number}', status={self.status})"
