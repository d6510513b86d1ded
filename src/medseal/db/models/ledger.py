"""Ledger view models: record envelopes and access grants.

Each record generation is a new row, and the
superseded row is kept with is_current=False and its payload replaced
by the audit-only RecordTombstone form (no wrapped key or nonce).
Grants are one row per (record, recipient) and are replaced in place by
rotation or removed by revocation.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Index, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from medseal.db.models.base import (
    Base,
    DigestString,
    OptionalTimestampTZ,
    RefString,
    TimestampTZ,
    WirePayload,
)


class RecordEnvelopeRow(Base):
    """One generation of a record: the current envelope, or a tombstone."""

    __tablename__ = "record_envelopes"
    __table_args__ = (
        UniqueConstraint("record_ref", "generation", name="uq_record_envelopes_generation"),
        Index("ix_record_envelopes_current", "record_ref", "is_current"),
    )

    envelope_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_ref: Mapped[RefString]
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    fingerprint: Mapped[DigestString]
    envelope: Mapped[WirePayload]
    created_at: Mapped[TimestampTZ]


class AccessGrantRow(Base):
    """A secondary principal's grant on one record."""

    __tablename__ = "access_grants"

    record_ref: Mapped[RefString] = mapped_column(primary_key=True)
    recipient_id: Mapped[RefString] = mapped_column(primary_key=True)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    grant: Mapped[WirePayload]
    expires_at: Mapped[OptionalTimestampTZ]
