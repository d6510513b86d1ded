"""SQLAlchemy models for the authorization ledger view."""

from medseal.db.models.base import Base, metadata
from medseal.db.models.ledger import AccessGrantRow, RecordEnvelopeRow

__all__ = [
    "AccessGrantRow",
    "Base",
    "RecordEnvelopeRow",
    "metadata",
]
