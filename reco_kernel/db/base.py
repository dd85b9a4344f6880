"""
Module: reco_kernel.db.base
Responsibility: Declarative base for all SQLAlchemy ORM models.  Provides the
    type annotation map for consistent column types and the UTC timestamp
    column type shared by every table.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - Decimal precision: Decimal maps to Numeric(19, 4).  Amounts are never
      stored as float.
    - UTC timestamps: UTCDateTime stores naive UTC and always returns aware
      UTC datetimes, whatever the backend's timezone support.  Diffing a
      loaded record against a candidate therefore never reports a spurious
      change caused by timezone stripping.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import BigInteger, Date, DateTime, Numeric
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timestamp stored as naive UTC, loaded as timezone-aware UTC.

    Contract:
        Naive input values are taken to already be UTC.  Aware values are
        converted to UTC before binding.

    Guarantees:
        - process_result_value always returns an aware datetime (or None).
        - cache_ok=True enables SQLAlchemy statement caching.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Contract:
        Every ORM model inherits from Base and declares its own string
        primary key (ledger ids come from the import pipeline, not from
        this kernel).

    Guarantees:
        - Decimal maps to Numeric(19, 4).
        - datetime maps to UTCDateTime.
        - date maps to Date.
        - int maps to BigInteger.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(19, 4),
        datetime: UTCDateTime(),
        date: Date(),
        int: BigInteger,
    }
