"""Tests for the authorization ledger implementations.

Every behavioral test runs against both the in-memory ledger and the
SQL ledger (SQLite via aiosqlite), since callers may use either.

Tests cover:
- Record creation and generation-checked updates
- Idempotent rewrites and tombstone history
- Grant creation, update, lookup and removal
- Error mapping for database failures
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select

from medseal.db import create_ledger_engine, create_session_factory, init_ledger_schema
from medseal.db.models import RecordEnvelopeRow
from medseal.services.envelope import AccessGrant, DocumentEnvelope, RecordTombstone, WrappedKey
from medseal.services.ledger import (
    GrantNotFoundError,
    InMemoryAuthorizationLedger,
    LedgerConflictError,
    LedgerError,
    RecordNotFoundError,
    SqlAuthorizationLedger,
)

RECORD = "rec-1"
OWNER = "patient-1"


def make_wrap(generation: int, tag: bytes = b"\x01") -> WrappedKey:
    return WrappedKey(recipient_key_id="a" * 64, ciphertext=tag * 256, generation=generation)


def make_envelope(
    generation: int,
    predecessor: DocumentEnvelope | None = None,
    *,
    owner_id: str = OWNER,
    record_ref: str = RECORD,
) -> DocumentEnvelope:
    return DocumentEnvelope(
        record_ref=record_ref,
        owner_id=owner_id,
        content_ref=f"{generation:064x}",
        owner_wrapped_key=make_wrap(generation),
        iv=bytes(12),
        generation=generation,
        content_mac="d" * 64,
        predecessor=predecessor.fingerprint() if predecessor else None,
        created_at=datetime(2025, 1, generation, tzinfo=UTC),
    )


def make_grant(recipient_id: str, generation: int = 1, **kwargs) -> AccessGrant:
    return AccessGrant(
        record_ref=RECORD,
        recipient_id=recipient_id,
        wrapped_key=make_wrap(generation, b"\x02"),
        granted_at=datetime(2025, 1, 1, tzinfo=UTC),
        **kwargs,
    )


@pytest.fixture(params=["memory", "sql"])
async def any_ledger(request, sql_ledger):
    if request.param == "memory":
        return InMemoryAuthorizationLedger()
    return sql_ledger


@pytest.fixture
async def seeded_ledger(any_ledger):
    """Ledger holding RECORD at generation 1."""
    await any_ledger.commit_record_update(RECORD, make_envelope(1))
    return any_ledger


# ---------------------------------------------------------------------------
# Record entries
# ---------------------------------------------------------------------------
class TestRecordEntries:
    """Tests for get_record_envelope and commit_record_update."""

    async def test_missing_record(self, any_ledger):
        with pytest.raises(RecordNotFoundError) as exc_info:
            await any_ledger.get_record_envelope("missing")
        assert exc_info.value.record_ref == "missing"
        assert exc_info.value.retryable is False

    async def test_create_and_read(self, any_ledger):
        envelope = make_envelope(1)
        await any_ledger.commit_record_update(RECORD, envelope)
        assert await any_ledger.get_record_envelope(RECORD) == envelope

    async def test_new_record_must_start_at_generation_one(self, any_ledger):
        with pytest.raises(LedgerConflictError):
            await any_ledger.commit_record_update(RECORD, make_envelope(2))

    async def test_record_ref_must_match(self, any_ledger):
        with pytest.raises(LedgerConflictError):
            await any_ledger.commit_record_update("rec-2", make_envelope(1))

    async def test_update_advances_generation(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        second = make_envelope(2, first)
        await seeded_ledger.commit_record_update(RECORD, second)

        assert await seeded_ledger.get_record_envelope(RECORD) == second
        assert await seeded_ledger.get_record_history(RECORD) == [first.tombstone()]

    async def test_identical_rewrite_is_noop(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        second = make_envelope(2, first)
        await seeded_ledger.commit_record_update(RECORD, second)
        await seeded_ledger.commit_record_update(RECORD, second)

        assert await seeded_ledger.get_record_envelope(RECORD) == second
        assert len(await seeded_ledger.get_record_history(RECORD)) == 1

    async def test_skipped_generation_conflicts(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        with pytest.raises(LedgerConflictError) as exc_info:
            await seeded_ledger.commit_record_update(RECORD, make_envelope(3, first))
        assert exc_info.value.retryable is False

    async def test_stale_update_conflicts(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        await seeded_ledger.commit_record_update(RECORD, make_envelope(2, first))
        # A different generation-2 envelope racing the committed one
        rival = make_envelope(2, first)
        rival = DocumentEnvelope.from_dict({**rival.to_dict(), "content_ref": "f" * 64})
        with pytest.raises(LedgerConflictError):
            await seeded_ledger.commit_record_update(RECORD, rival)

    async def test_wrong_predecessor_conflicts(self, seeded_ledger):
        unrelated = make_envelope(1, owner_id="someone-else")
        with pytest.raises(LedgerConflictError):
            await seeded_ledger.commit_record_update(RECORD, make_envelope(2, unrelated))

    async def test_owner_cannot_change(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        with pytest.raises(LedgerConflictError):
            await seeded_ledger.commit_record_update(
                RECORD, make_envelope(2, first, owner_id="intruder")
            )

    async def test_history_keeps_no_key_material(self, seeded_ledger):
        first = await seeded_ledger.get_record_envelope(RECORD)
        second = make_envelope(2, first)
        await seeded_ledger.commit_record_update(RECORD, second)

        (tombstone,) = await seeded_ledger.get_record_history(RECORD)
        assert isinstance(tombstone, RecordTombstone)
        assert tombstone.fingerprint == second.predecessor
        assert not hasattr(tombstone, "owner_wrapped_key")
        assert not hasattr(tombstone, "iv")

    async def test_history_of_unknown_record_is_empty(self, any_ledger):
        assert await any_ledger.get_record_history("missing") == []


# ---------------------------------------------------------------------------
# Grant entries
# ---------------------------------------------------------------------------
class TestGrantEntries:
    """Tests for put_grant, commit_grant_update, get_grant(s) and remove_grant."""

    async def test_put_grant_requires_record(self, any_ledger):
        with pytest.raises(RecordNotFoundError):
            await any_ledger.put_grant(make_grant("doctor-a"))

    async def test_put_grant_requires_current_generation(self, seeded_ledger):
        with pytest.raises(LedgerConflictError):
            await seeded_ledger.put_grant(make_grant("doctor-a", generation=2))

    async def test_grants_are_ordered_by_recipient(self, seeded_ledger):
        await seeded_ledger.put_grant(make_grant("doctor-b"))
        await seeded_ledger.put_grant(make_grant("doctor-a"))

        grants = await seeded_ledger.get_grants(RECORD)
        assert [g.recipient_id for g in grants] == ["doctor-a", "doctor-b"]
        assert await seeded_ledger.get_grant(RECORD, "doctor-b") == make_grant("doctor-b")

    async def test_put_grant_replaces(self, seeded_ledger):
        expires = datetime(2030, 1, 1, tzinfo=UTC)
        await seeded_ledger.put_grant(make_grant("doctor-a"))
        await seeded_ledger.put_grant(make_grant("doctor-a", expires_at=expires))

        grant = await seeded_ledger.get_grant(RECORD, "doctor-a")
        assert grant.expires_at == expires
        assert len(await seeded_ledger.get_grants(RECORD)) == 1

    async def test_missing_grant(self, seeded_ledger):
        with pytest.raises(GrantNotFoundError) as exc_info:
            await seeded_ledger.get_grant(RECORD, "doctor-x")
        assert exc_info.value.recipient_id == "doctor-x"

    async def test_grant_update_keeps_expiry(self, seeded_ledger):
        expires = datetime.now(UTC) + timedelta(days=30)
        await seeded_ledger.put_grant(make_grant("doctor-a", expires_at=expires))
        first = await seeded_ledger.get_record_envelope(RECORD)
        await seeded_ledger.commit_record_update(RECORD, make_envelope(2, first))

        new_wrap = make_wrap(2, b"\x03")
        await seeded_ledger.commit_grant_update(RECORD, "doctor-a", new_wrap)

        grant = await seeded_ledger.get_grant(RECORD, "doctor-a")
        assert grant.wrapped_key == new_wrap
        assert grant.generation == 2
        assert grant.expires_at == expires

    async def test_grant_update_is_idempotent(self, seeded_ledger):
        await seeded_ledger.put_grant(make_grant("doctor-a"))
        first = await seeded_ledger.get_record_envelope(RECORD)
        await seeded_ledger.commit_record_update(RECORD, make_envelope(2, first))

        new_wrap = make_wrap(2, b"\x03")
        await seeded_ledger.commit_grant_update(RECORD, "doctor-a", new_wrap)
        await seeded_ledger.commit_grant_update(RECORD, "doctor-a", new_wrap)
        assert (await seeded_ledger.get_grant(RECORD, "doctor-a")).wrapped_key == new_wrap

    async def test_grant_update_rejects_other_generation(self, seeded_ledger):
        await seeded_ledger.put_grant(make_grant("doctor-a"))
        with pytest.raises(LedgerConflictError):
            await seeded_ledger.commit_grant_update(RECORD, "doctor-a", make_wrap(2))

    async def test_grant_update_requires_grant(self, seeded_ledger):
        with pytest.raises(GrantNotFoundError):
            await seeded_ledger.commit_grant_update(RECORD, "doctor-a", make_wrap(1))

    async def test_remove_grant(self, seeded_ledger):
        await seeded_ledger.put_grant(make_grant("doctor-a"))
        assert await seeded_ledger.remove_grant(RECORD, "doctor-a") is True
        assert await seeded_ledger.remove_grant(RECORD, "doctor-a") is False
        assert await seeded_ledger.get_grants(RECORD) == []


# ---------------------------------------------------------------------------
# SQL storage and error mapping
# ---------------------------------------------------------------------------
class TestSqlErrors:
    """Tests for SqlAuthorizationLedger storage and failure mapping."""

    async def test_database_error_is_retryable_ledger_error(self, tmp_path):
        # Schema never created: every query fails at the database
        engine = create_ledger_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        ledger = SqlAuthorizationLedger(create_session_factory(engine))
        try:
            with pytest.raises(LedgerError) as exc_info:
                await ledger.get_record_envelope(RECORD)
        finally:
            await engine.dispose()

        error = exc_info.value
        assert not isinstance(error, RecordNotFoundError)
        assert error.retryable is True
        assert error.operation == "get_record_envelope"

    async def test_demoted_row_stores_tombstone(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        engine = create_ledger_engine(f"sqlite+aiosqlite:///{db_path}")
        await init_ledger_schema(engine)
        ledger = SqlAuthorizationLedger(create_session_factory(engine))
        try:
            first = make_envelope(1)
            await ledger.commit_record_update(RECORD, first)
            await ledger.commit_record_update(RECORD, make_envelope(2, first))
        finally:
            await engine.dispose()

        sync_engine = create_engine(f"sqlite:///{db_path}")
        try:
            with sync_engine.connect() as conn:
                row = conn.execute(
                    select(RecordEnvelopeRow.fingerprint, RecordEnvelopeRow.envelope).where(
                        RecordEnvelopeRow.is_current.is_(False)
                    )
                ).one()
        finally:
            sync_engine.dispose()

        assert row.fingerprint == first.fingerprint()
        assert row.envelope["tombstone"] is True
        assert "owner_wrapped_key" not in row.envelope
        assert "iv" not in row.envelope
