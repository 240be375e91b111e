"""
Declarative base and shared column conventions for the ledger models.

Every table gets an integer id, a string uuid and created/updated
timestamps from BaseModel. Quantities use DecimalString so no volume,
fraction or cost is ever a float, and status columns use enum_type() so
the database holds the readable enum value.
"""

import uuid as uuid_lib
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Type

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum
from sqlalchemy.orm import declarative_base, validates
from sqlalchemy.types import TypeDecorator

from cellar_tracker.utils.datetime_utils import utc_now

Base = declarative_base()


class DecimalString(TypeDecorator):
    """
    Exact decimal quantity stored as a string.

    Volumes, quantities, fractions and costs never pass through binary
    floating point: values are bound as canonical decimal strings and
    loaded back as Decimal. Floats are rejected at bind time.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError(f"Float {value!r} passed to a decimal column; use Decimal or str")
        try:
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal value: {value!r}") from e
        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite decimal value: {value!r}")
        return str(decimal_value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value)


def enum_type(enum_cls: Type[Enum]) -> SQLEnum:
    """Non-native Enum column type persisting member values ("available", not "AVAILABLE")."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
        length=30,
        validate_strings=True,
    )


def _plain_value(value: Any) -> Any:
    """JSON-safe rendition of a column value."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


class BaseModel(Base):
    """
    Abstract parent of every ledger table.

    Columns:
        id: Integer primary key
        uuid: Random UUID string, stable across exports
        created_at / updated_at: UTC timestamps maintained on insert/update
    """

    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid_lib.uuid4()), index=True
    )
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    @validates("uuid")
    def _validate_uuid(self, _key: str, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    def to_dict(self, include_relationships: bool = False) -> Dict[str, Any]:
        """
        Column values keyed by column name, ready for json.dumps.

        Datetimes are ISO strings, Decimals are strings and enums are their
        values. With include_relationships, loaded related rows are nested
        (one level deep, without their own relationships).
        """
        data = {
            column.name: _plain_value(getattr(self, column.name))
            for column in self.__table__.columns
        }
        if not include_relationships:
            return data

        for rel in self.__mapper__.relationships:
            related = getattr(self, rel.key)
            if related is None:
                data[rel.key] = None
            elif rel.uselist:
                data[rel.key] = [item.to_dict() for item in related]
            else:
                data[rel.key] = related.to_dict()
        return data

    def __repr__(self) -> str:
        # Class name plus whichever of id/name is set
        parts = [
            f"{attr}={getattr(self, attr)!r}"
            for attr in ("id", "name")
            if getattr(self, attr, None) is not None
        ]
        return f"{type(self).__name__}({', '.join(parts)})"


class SoftDeleteMixin:
    """
    Tombstone convention shared by every ledger entity.

    Rows referenced by audit history are never physically removed;
    deleted_at marks them gone and every service query filters on it.
    """

    deleted_at = Column(DateTime, nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        self.deleted_at = utc_now()

    @classmethod
    def not_deleted(cls):
        """Filter predicate for live rows: query.filter(Model.not_deleted())."""
        return cls.deleted_at.is_(None)
