"""
Module: fieldservice_kernel.db.base
Responsibility: Declarative base classes and column types for all ORM models.
    Provides the UUID primary key convention, UTC timestamp handling, the
    TenantScoped mixin that every tenant-owned table carries, and the
    TrackedBase mixin for creation/update metadata.
Architecture position: Kernel > DB. Lowest-level import target within the
    kernel. MUST NOT import from models/, services/, selectors/ or outer layers.

Invariants enforced:
    - UUID primary keys generated with uuid4.
    - Timestamps are stored in UTC and always returned timezone-aware, on
      PostgreSQL and on SQLite (which has no timezone support).
    - Every tenant-owned row carries a non-null tenant_id.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Converts UUID -> str on bind and str -> UUID on load.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    Naive values are assumed to be UTC. SQLite receives naive UTC because it
    cannot store an offset; results without tzinfo are tagged UTC on load.
    Comparisons in SQL therefore behave the same on both dialects.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name != "postgresql":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def status_type(enum_cls: type[Enum]) -> SAEnum:
    """String-backed enum column storing member values, no native type."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=_enum_values,
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Guarantees:
        - id is a uuid4-generated UUID stored as String(36).
        - Decimal maps to Numeric(10, 2) (line item quantities).
        - datetime maps to UTCDateTime.
        - int maps to BigInteger (minor-unit money).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(10, 2),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TenantScoped:
    """
    Mixin for every tenant-owned table.

    The session-level isolation listeners (db/tenancy.py) add a
    ``tenant_id = :bound_tenant`` criterion to every ORM read of a
    TenantScoped entity and reject flushes of rows outside the bound tenant.
    PostgreSQL row-level security (db/policies.py) re-checks the same column.
    """

    @declared_attr
    def tenant_id(cls) -> Mapped[PyUUID]:
        return mapped_column(
            UUIDString(),
            ForeignKey("tenants.id"),
            nullable=False,
            index=True,
        )


class TrackedBase(Base):
    """
    Abstract base with creation/update timestamps and actors.

    Services set ``created_at`` from their injected Clock; the server default
    only covers rows written outside a service. ``updated_at`` and
    ``updated_by_id`` are metadata and may change even on frozen rows.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )


# Re-export UUID for convenience
UUID = PyUUID
