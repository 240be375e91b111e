"""
Vessel model for holding tanks.

A vessel holds at most one active batch at a time. Vessels are created
manually, their status is driven by transfers, fills and cleaning, and
they are soft-deleted only if never used.
"""

from sqlalchemy import Column, Integer, String, Text, Index
from sqlalchemy.orm import relationship

from .base import BaseModel, DecimalString, SoftDeleteMixin, enum_type
from .enums import VesselStatus
from cellar_tracker.utils.constants import LEDGER_VOLUME_UNIT


class Vessel(SoftDeleteMixin, BaseModel):
    """
    Vessel model.

    Attributes:
        name: Unique vessel name (e.g. "Tank 3")
        capacity: Working capacity, in capacity_unit
        capacity_unit: Volume unit of capacity (L, gal, hL, ...)
        status: Current VesselStatus
        material: Construction material (stainless, oak, ...)
        location: Where the vessel stands
        notes: Optional notes
        version: Optimistic lock counter
    """

    __tablename__ = "vessels"

    name = Column(String(200), nullable=False)
    capacity = Column(DecimalString, nullable=False)
    capacity_unit = Column(String(20), nullable=False, default=LEDGER_VOLUME_UNIT)
    status = Column(enum_type(VesselStatus), nullable=False, default=VesselStatus.AVAILABLE)
    material = Column(String(50), nullable=True)
    location = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    batches = relationship("Batch", back_populates="vessel")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_vessel_name", "name"),
        Index("idx_vessel_status", "status"),
    )

    @property
    def capacity_liters(self):
        """Capacity converted to the ledger's volume unit."""
        from cellar_tracker.services.unit_converter import to_liters

        return to_liters(self.capacity, self.capacity_unit)
