"""Authorization ledger: the consumer view of record and grant entries.

The ledger is an external, append-oriented store of authorization state.
This module defines the typed interface the engines depend on and two
implementations:
- InMemoryAuthorizationLedger: process-local, for development and tests
- SqlAuthorizationLedger: SQLAlchemy async, one row per entry

Every write is atomic at single-entry granularity; no multi-entry
transaction is assumed by callers. Record updates are checked against the
current generation so a stale or replayed write can never move a record
backwards:
- a new record must be generation 1 with no predecessor
- an update must be exactly current generation + 1 and name the current
  envelope's fingerprint as predecessor
- rewriting the current envelope unchanged is an idempotent success

Implementations may cache nothing: the engines re-read before every
rotation, and any caching belongs to the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from medseal.db.models import AccessGrantRow, RecordEnvelopeRow
from medseal.services.envelope import (
    AccessGrant,
    DocumentEnvelope,
    RecordTombstone,
    WrappedKey,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from medseal.core.config import LedgerSettings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger reads and writes.

    Attributes:
        message: Human-readable error description.
        record_ref: The record involved.
        recipient_id: The grant holder involved (if applicable).
        operation: The operation that failed.
        retryable: Whether repeating the same call may succeed.
    """

    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        record_ref: str | None = None,
        recipient_id: str | None = None,
        operation: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        """Initialize ledger error with context.

        Args:
            message: Error description.
            record_ref: Record reference (if applicable).
            recipient_id: Grant holder (if applicable).
            operation: Operation name (e.g., 'commit_record_update').
            retryable: Overrides the class default.
        """
        self.message = message
        self.record_ref = record_ref
        self.recipient_id = recipient_id
        self.operation = operation
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(message)


class RecordNotFoundError(LedgerError):
    """Raised when a record entry does not exist."""

    default_retryable = False


class GrantNotFoundError(LedgerError):
    """Raised when a grant entry does not exist."""

    default_retryable = False


class LedgerConflictError(LedgerError):
    """Raised when a write does not follow the current ledger state."""

    default_retryable = False


def check_record_transition(
    record_ref: str,
    current: DocumentEnvelope | None,
    new: DocumentEnvelope,
) -> bool:
    """Validate a record update against the current entry.

    Args:
        record_ref: Record being written.
        current: Current envelope, or None for a new record.
        new: Envelope to write.

    Returns:
        True if the write must be applied, False if it is an identical retry.

    Raises:
        LedgerConflictError: If the update does not follow the current state.
    """

    def conflict(reason: str) -> LedgerConflictError:
        return LedgerConflictError(
            f"Rejected record update for {record_ref}: {reason}",
            record_ref=record_ref,
            operation="commit_record_update",
        )

    if new.record_ref != record_ref:
        raise conflict(f"envelope names record {new.record_ref}")

    if current is None:
        if new.generation != 1 or new.predecessor is not None:
            raise conflict("record does not exist; first generation must be 1")
        return True

    if new.fingerprint() == current.fingerprint():
        return False
    if new.owner_id != current.owner_id:
        raise conflict("owner cannot change")
    if new.generation != current.generation + 1:
        raise conflict(f"generation {new.generation} does not follow {current.generation}")
    if new.predecessor != current.fingerprint():
        raise conflict("predecessor does not match the current envelope")
    return True


def check_grant_generation(
    record_ref: str,
    recipient_id: str,
    current: DocumentEnvelope,
    wrapped_key: WrappedKey,
) -> None:
    """Reject grant writes whose wrapped key is not for the current generation.

    Raises:
        LedgerConflictError: If the generations differ.
    """
    if wrapped_key.generation != current.generation:
        raise LedgerConflictError(
            f"Wrapped key generation {wrapped_key.generation} does not match "
            f"record generation {current.generation}",
            record_ref=record_ref,
            recipient_id=recipient_id,
            operation="commit_grant_update",
        )


class AuthorizationLedger(ABC):
    """Typed interface over the external authorization ledger."""

    @abstractmethod
    async def get_record_envelope(self, record_ref: str) -> DocumentEnvelope:
        """Return the current envelope of a record.

        Raises:
            RecordNotFoundError: If the record does not exist.
            LedgerError: If the read fails.
        """

    @abstractmethod
    async def get_grants(self, record_ref: str) -> list[AccessGrant]:
        """Return every grant on a record, ordered by recipient id."""

    async def get_grant(self, record_ref: str, recipient_id: str) -> AccessGrant:
        """Return one recipient's grant on a record.

        Raises:
            GrantNotFoundError: If the recipient holds no grant.
        """
        for grant in await self.get_grants(record_ref):
            if grant.recipient_id == recipient_id:
                return grant
        raise GrantNotFoundError(
            f"No grant for {recipient_id} on record {record_ref}",
            record_ref=record_ref,
            recipient_id=recipient_id,
            operation="get_grant",
        )

    @abstractmethod
    async def commit_record_update(self, record_ref: str, envelope: DocumentEnvelope) -> None:
        """Atomically replace (or create) a record's envelope.

        The superseded envelope is kept only as a RecordTombstone; its
        wrapped key and nonce are discarded.

        Raises:
            LedgerConflictError: If the envelope does not follow the current one.
            LedgerError: If the write fails.
        """

    @abstractmethod
    async def put_grant(self, grant: AccessGrant) -> None:
        """Create or replace a grant entry.

        Raises:
            RecordNotFoundError: If the record does not exist.
            LedgerConflictError: If the wrapped key is not for the current generation.
        """

    @abstractmethod
    async def commit_grant_update(
        self,
        record_ref: str,
        recipient_id: str,
        wrapped_key: WrappedKey,
    ) -> None:
        """Replace the wrapped key of an existing grant, keeping its expiry.

        Writing the same wrapped key again is a no-op success.

        Raises:
            GrantNotFoundError: If the grant does not exist.
            LedgerConflictError: If the wrapped key is not for the current generation.
            LedgerError: If the write fails.
        """

    @abstractmethod
    async def remove_grant(self, record_ref: str, recipient_id: str) -> bool:
        """Remove a grant entry.

        Returns:
            True if an entry was removed, False if none existed.
        """

    @abstractmethod
    async def get_record_history(self, record_ref: str) -> list[RecordTombstone]:
        """Return tombstones of superseded generations, oldest first."""


class InMemoryAuthorizationLedger(AuthorizationLedger):
    """Process-local ledger for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, DocumentEnvelope] = {}
        self._tombstones: dict[str, list[RecordTombstone]] = {}
        self._grants: dict[str, dict[str, AccessGrant]] = {}

    def _require_record(self, record_ref: str, operation: str) -> DocumentEnvelope:
        envelope = self._records.get(record_ref)
        if envelope is None:
            raise RecordNotFoundError(
                f"Record does not exist: {record_ref}",
                record_ref=record_ref,
                operation=operation,
            )
        return envelope

    async def get_record_envelope(self, record_ref: str) -> DocumentEnvelope:
        return self._require_record(record_ref, "get_record_envelope")

    async def get_grants(self, record_ref: str) -> list[AccessGrant]:
        grants = self._grants.get(record_ref, {})
        return [grants[k] for k in sorted(grants)]

    async def commit_record_update(self, record_ref: str, envelope: DocumentEnvelope) -> None:
        current = self._records.get(record_ref)
        if not check_record_transition(record_ref, current, envelope):
            return
        if current is not None:
            self._tombstones.setdefault(record_ref, []).append(current.tombstone())
        self._records[record_ref] = envelope
        logger.debug("Record %s now at generation %d", record_ref, envelope.generation)

    async def put_grant(self, grant: AccessGrant) -> None:
        current = self._require_record(grant.record_ref, "put_grant")
        check_grant_generation(grant.record_ref, grant.recipient_id, current, grant.wrapped_key)
        self._grants.setdefault(grant.record_ref, {})[grant.recipient_id] = grant

    async def commit_grant_update(
        self,
        record_ref: str,
        recipient_id: str,
        wrapped_key: WrappedKey,
    ) -> None:
        current = self._require_record(record_ref, "commit_grant_update")
        existing = self._grants.get(record_ref, {}).get(recipient_id)
        if existing is None:
            raise GrantNotFoundError(
                f"No grant for {recipient_id} on record {record_ref}",
                record_ref=record_ref,
                recipient_id=recipient_id,
                operation="commit_grant_update",
            )
        if existing.wrapped_key == wrapped_key:
            return
        check_grant_generation(record_ref, recipient_id, current, wrapped_key)
        self._grants[record_ref][recipient_id] = AccessGrant(
            record_ref=record_ref,
            recipient_id=recipient_id,
            wrapped_key=wrapped_key,
            expires_at=existing.expires_at,
            granted_at=existing.granted_at,
        )

    async def remove_grant(self, record_ref: str, recipient_id: str) -> bool:
        return self._grants.get(record_ref, {}).pop(recipient_id, None) is not None

    async def get_record_history(self, record_ref: str) -> list[RecordTombstone]:
        return list(self._tombstones.get(record_ref, []))


class SqlAuthorizationLedger(AuthorizationLedger):
    """Ledger view persisted with SQLAlchemy async sessions.

    Each public call runs in its own transaction, matching the
    single-entry atomicity of the external ledger.

    Example:
        engine = create_ledger_engine("postgresql+asyncpg://...")
        await init_ledger_schema(engine)
        ledger = SqlAuthorizationLedger(create_session_factory(engine))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with a session factory.

        Args:
            session_factory: Factory bound to the ledger database.
        """
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings: LedgerSettings) -> SqlAuthorizationLedger:
        """Create a ledger from LedgerSettings configuration."""
        from medseal.db import create_ledger_engine, create_session_factory

        engine = create_ledger_engine(settings.url, echo=settings.echo)
        return cls(create_session_factory(engine))

    @asynccontextmanager
    async def _transaction(
        self,
        operation: str,
        *,
        record_ref: str,
        recipient_id: str | None = None,
    ) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except IntegrityError as e:
            raise LedgerConflictError(
                f"Concurrent write rejected: {e.orig}",
                record_ref=record_ref,
                recipient_id=recipient_id,
                operation=operation,
            ) from e
        except SQLAlchemyError as e:
            logger.error("Ledger %s failed for %s: %s", operation, record_ref, str(e))
            raise LedgerError(
                f"Ledger {operation} failed: {e}",
                record_ref=record_ref,
                recipient_id=recipient_id,
                operation=operation,
            ) from e

    @staticmethod
    async def _current_row(session: AsyncSession, record_ref: str) -> RecordEnvelopeRow | None:
        result = await session.execute(
            select(RecordEnvelopeRow)
            .where(
                RecordEnvelopeRow.record_ref == record_ref,
                RecordEnvelopeRow.is_current.is_(True),
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _grant_row(
        session: AsyncSession, record_ref: str, recipient_id: str
    ) -> AccessGrantRow | None:
        return await session.get(AccessGrantRow, (record_ref, recipient_id))

    @staticmethod
    def _not_found(record_ref: str, operation: str) -> RecordNotFoundError:
        return RecordNotFoundError(
            f"Record does not exist: {record_ref}",
            record_ref=record_ref,
            operation=operation,
        )

    async def get_record_envelope(self, record_ref: str) -> DocumentEnvelope:
        async with self._transaction("get_record_envelope", record_ref=record_ref) as session:
            row = await self._current_row(session, record_ref)
            if row is None:
                raise self._not_found(record_ref, "get_record_envelope")
            return DocumentEnvelope.from_dict(row.envelope)

    async def get_grants(self, record_ref: str) -> list[AccessGrant]:
        async with self._transaction("get_grants", record_ref=record_ref) as session:
            result = await session.execute(
                select(AccessGrantRow)
                .where(AccessGrantRow.record_ref == record_ref)
                .order_by(AccessGrantRow.recipient_id)
            )
            return [AccessGrant.from_dict(row.grant) for row in result.scalars()]

    async def get_grant(self, record_ref: str, recipient_id: str) -> AccessGrant:
        async with self._transaction(
            "get_grant", record_ref=record_ref, recipient_id=recipient_id
        ) as session:
            row = await self._grant_row(session, record_ref, recipient_id)
            if row is None:
                raise GrantNotFoundError(
                    f"No grant for {recipient_id} on record {record_ref}",
                    record_ref=record_ref,
                    recipient_id=recipient_id,
                    operation="get_grant",
                )
            return AccessGrant.from_dict(row.grant)

    async def commit_record_update(self, record_ref: str, envelope: DocumentEnvelope) -> None:
        async with self._transaction("commit_record_update", record_ref=record_ref) as session:
            row = await self._current_row(session, record_ref)
            current = DocumentEnvelope.from_dict(row.envelope) if row is not None else None
            if not check_record_transition(record_ref, current, envelope):
                return
            if row is not None:
                # Demoted rows keep the fingerprint column and an audit-only payload
                row.is_current = False
                row.envelope = current.tombstone().to_dict()
                await session.flush()
            session.add(
                RecordEnvelopeRow(
                    record_ref=record_ref,
                    generation=envelope.generation,
                    is_current=True,
                    fingerprint=envelope.fingerprint(),
                    envelope=envelope.to_dict(),
                    created_at=envelope.created_at,
                )
            )
        logger.debug("Record %s now at generation %d", record_ref, envelope.generation)

    async def put_grant(self, grant: AccessGrant) -> None:
        async with self._transaction(
            "put_grant", record_ref=grant.record_ref, recipient_id=grant.recipient_id
        ) as session:
            current_row = await self._current_row(session, grant.record_ref)
            if current_row is None:
                raise self._not_found(grant.record_ref, "put_grant")
            current = DocumentEnvelope.from_dict(current_row.envelope)
            check_grant_generation(
                grant.record_ref, grant.recipient_id, current, grant.wrapped_key
            )
            row = await self._grant_row(session, grant.record_ref, grant.recipient_id)
            if row is None:
                row = AccessGrantRow(record_ref=grant.record_ref, recipient_id=grant.recipient_id)
                session.add(row)
            row.generation = grant.generation
            row.grant = grant.to_dict()
            row.expires_at = grant.expires_at

    async def commit_grant_update(
        self,
        record_ref: str,
        recipient_id: str,
        wrapped_key: WrappedKey,
    ) -> None:
        async with self._transaction(
            "commit_grant_update", record_ref=record_ref, recipient_id=recipient_id
        ) as session:
            current_row = await self._current_row(session, record_ref)
            if current_row is None:
                raise self._not_found(record_ref, "commit_grant_update")
            row = await self._grant_row(session, record_ref, recipient_id)
            if row is None:
                raise GrantNotFoundError(
                    f"No grant for {recipient_id} on record {record_ref}",
                    record_ref=record_ref,
                    recipient_id=recipient_id,
                    operation="commit_grant_update",
                )
            existing = AccessGrant.from_dict(row.grant)
            if existing.wrapped_key == wrapped_key:
                return
            current = DocumentEnvelope.from_dict(current_row.envelope)
            check_grant_generation(record_ref, recipient_id, current, wrapped_key)
            updated = AccessGrant(
                record_ref=record_ref,
                recipient_id=recipient_id,
                wrapped_key=wrapped_key,
                expires_at=existing.expires_at,
                granted_at=existing.granted_at,
            )
            row.generation = updated.generation
            row.grant = updated.to_dict()

    async def remove_grant(self, record_ref: str, recipient_id: str) -> bool:
        async with self._transaction(
            "remove_grant", record_ref=record_ref, recipient_id=recipient_id
        ) as session:
            result = await session.execute(
                delete(AccessGrantRow).where(
                    AccessGrantRow.record_ref == record_ref,
                    AccessGrantRow.recipient_id == recipient_id,
                )
            )
            return bool(result.rowcount)

    async def get_record_history(self, record_ref: str) -> list[RecordTombstone]:
        async with self._transaction("get_record_history", record_ref=record_ref) as session:
            result = await session.execute(
                select(RecordEnvelopeRow)
                .where(
                    RecordEnvelopeRow.record_ref == record_ref,
                    RecordEnvelopeRow.is_current.is_(False),
                )
                .order_by(RecordEnvelopeRow.generation)
            )
            return [RecordTombstone.from_dict(row.envelope) for row in result.scalars()]

