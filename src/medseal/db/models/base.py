"""Base model definitions and common column types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column type annotations (PostgreSQL in production, SQLite in tests)
"""

from datetime import datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, String
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints keeps generated DDL stable across backends.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# Ledger references and principal ids
RefString = Annotated[str, mapped_column(String(255))]
# SHA-256 hex digests
DigestString = Annotated[str, mapped_column(String(64))]

TimestampTZ = Annotated[datetime, mapped_column(DateTime(timezone=True))]
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

# Ledger wire form of an envelope or grant
WirePayload = Annotated[dict[str, Any], mapped_column(JSON)]


class Base(DeclarativeBase):
    """Declarative base for all ledger models."""

    metadata = metadata
    registry = type_registry
