"""
Database Base Model
===================

Provides the base class for all SQLAlchemy models.

Column types are kept portable (generic ``Uuid``, JSON with a JSONB variant,
UTC-normalized timestamps) so the same models run on PostgreSQL in
production and on SQLite in the test suite.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on the way out; comparisons against aware
    datetimes would otherwise fail.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere
PortableJSON = JSON().with_variant(JSONB(), "postgresql")


def value_enum(enum_cls: type[Enum]) -> SQLEnum:
    """SQL enum that stores member values (``"cancel_pending"``), not names."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        length=32,
    )


class Base(DeclarativeBase):
    """
    Base class for all database models.

    Provides common columns and functionality.
    """

    # Type annotation for class attributes
    type_annotation_map = {
        datetime: UTCDateTime(),
        dict[str, Any]: PortableJSON,
        list[str]: PortableJSON,
    }


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: utcnow(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: utcnow(),
        onupdate=lambda: utcnow(),
        server_default=func.now(),
        nullable=False,
    )


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
