"""Tests for the record access service.

Tests cover:
- Sealing new records with initial grants
- Opening by owner and grant holders, and the refusals
- History of superseded generations
- Explicit grants with expiry
- End-to-end flows over the in-memory and SQL/S3 collaborators
- Wiring from settings
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from medseal.core.config import LedgerSettings, S3Settings, Settings
from medseal.services.blob_store import ObjectStoreBlobStore
from medseal.services.envelope import (
    AccessGrant,
    EnvelopeError,
    OwnerCredentials,
    StaleGrantError,
)
from medseal.services.ledger import (
    LedgerConflictError,
    RecordNotFoundError,
    SqlAuthorizationLedger,
)
from medseal.services.primitives import AuthenticationError, hash_data
from medseal.services.records import (
    AccessDeniedError,
    AccessExpiredError,
    RecordAccessService,
    create_record_access_service,
    expiry_for,
)

RECORD = "rec-1"
CONTENT = b"MRI: no abnormality detected."


# ---------------------------------------------------------------------------
# seal_new
# ---------------------------------------------------------------------------
class TestSealNew:
    """Tests for RecordAccessService.seal_new."""

    async def test_seal_commits_record_and_grants(
        self, service, ledger, blob_store, owner, doctor_a, doctor_b
    ):
        sealed = await service.seal_new(RECORD, owner, CONTENT, [doctor_a, doctor_b])

        assert sealed.content_ref in blob_store
        assert sealed.envelope.generation == 1
        assert sealed.envelope.predecessor is None
        assert sealed.envelope.owner_id == "patient-1"
        assert len(sealed.envelope.content_mac) == 64
        assert sealed.envelope.content_mac != hash_data(CONTENT)
        assert await ledger.get_record_envelope(RECORD) == sealed.envelope
        assert [g.recipient_id for g in sealed.grants] == ["doctor-a", "doctor-b"]
        assert await ledger.get_grants(RECORD) == sealed.grants

    async def test_stored_blob_is_ciphertext(self, service, blob_store, owner):
        sealed = await service.seal_new(RECORD, owner, CONTENT)
        stored = await blob_store.get(sealed.content_ref)
        assert CONTENT not in stored
        assert sealed.content_ref == hash_data(stored)

    async def test_grant_duration(self, service, owner, doctor_a):
        sealed = await service.seal_new(RECORD, owner, CONTENT, [doctor_a], duration_days=30)
        grant = sealed.grants[0]
        assert grant.expires_at == grant.granted_at + timedelta(days=30)

    async def test_owner_listed_as_recipient_gets_no_grant(self, service, owner):
        sealed = await service.seal_new(RECORD, owner, CONTENT, [owner.as_recipient()])
        assert sealed.grants == []

    async def test_existing_record_is_rejected(self, service, owner):
        await service.seal_new(RECORD, owner, CONTENT)
        with pytest.raises(LedgerConflictError):
            await service.seal_new(RECORD, owner, b"other content")


# ---------------------------------------------------------------------------
# open
# ---------------------------------------------------------------------------
class TestOpen:
    """Tests for RecordAccessService.open."""

    async def test_owner_and_grant_holder(self, service, owner, doctor_a, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        assert await service.open(RECORD, "patient-1", key_pairs["patient"].private_key) == CONTENT
        assert await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key) == CONTENT

    async def test_principal_without_grant(self, service, owner, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT)
        with pytest.raises(AccessDeniedError) as exc_info:
            await service.open(RECORD, "outsider", key_pairs["outsider"].private_key)
        assert exc_info.value.principal_id == "outsider"
        assert exc_info.value.record_ref == RECORD

    async def test_expired_grant(self, service, ledger, owner, doctor_a, key_pairs):
        sealed = await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        grant = sealed.grants[0]
        await ledger.put_grant(
            AccessGrant(
                record_ref=RECORD,
                recipient_id="doctor-a",
                wrapped_key=grant.wrapped_key,
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
                granted_at=grant.granted_at,
            )
        )
        with pytest.raises(AccessExpiredError):
            await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key)

    async def test_wrong_private_key(self, service, owner, doctor_a, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        with pytest.raises(EnvelopeError):
            await service.open(RECORD, "doctor-a", key_pairs["outsider"].private_key)

    async def test_missing_record(self, service, key_pairs):
        with pytest.raises(RecordNotFoundError):
            await service.open("missing", "patient-1", key_pairs["patient"].private_key)

    async def test_rotation_between_reads(
        self, monkeypatch, service, ledger, owner, doctor_a, key_pairs
    ):
        await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        old_envelope = await ledger.get_record_envelope(RECORD)
        await service.rotate(RECORD, owner, [doctor_a])
        new_envelope = await ledger.get_record_envelope(RECORD)

        # The envelope read predates the rotation, the grant read follows it
        reads = AsyncMock(side_effect=[old_envelope, new_envelope])
        monkeypatch.setattr(ledger, "get_record_envelope", reads)

        opened = await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key)
        assert opened == CONTENT
        assert reads.await_count == 2


# ---------------------------------------------------------------------------
# grant
# ---------------------------------------------------------------------------
class TestGrant:
    """Tests for RecordAccessService.grant."""

    async def test_granted_recipient_can_open(self, service, owner, doctor_c, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT)
        grant = await service.grant(RECORD, owner, doctor_c)

        assert grant.expires_at is None
        assert grant.generation == 1
        assert grant.wrapped_key.recipient_key_id == doctor_c.key_id
        assert await service.open(RECORD, "doctor-c", key_pairs["doctor_c"].private_key) == CONTENT

    async def test_grant_after_rotation_uses_current_generation(
        self, service, owner, doctor_a, doctor_c, key_pairs
    ):
        await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        await service.rotate(RECORD, owner, [doctor_a])
        grant = await service.grant(RECORD, owner, doctor_c, duration_days=7)

        assert grant.generation == 2
        assert grant.expires_at == grant.granted_at + timedelta(days=7)
        assert await service.open(RECORD, "doctor-c", key_pairs["doctor_c"].private_key) == CONTENT

    async def test_regrant_refreshes_stale_grant(self, service, owner, doctor_a, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT, [doctor_a])
        await service.rotate(RECORD, owner, [])
        with pytest.raises(StaleGrantError):
            await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key)

        await service.grant(RECORD, owner, doctor_a)
        assert await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key) == CONTENT

    async def test_only_owner_can_grant(self, service, owner, doctor_c, key_pairs):
        await service.seal_new(RECORD, owner, CONTENT)
        not_owner = OwnerCredentials("doctor-a", key_pairs["doctor_a"].private_key)
        with pytest.raises(AccessDeniedError):
            await service.grant(RECORD, not_owner, doctor_c)

    async def test_cannot_grant_to_owner(self, service, owner):
        await service.seal_new(RECORD, owner, CONTENT)
        with pytest.raises(ValueError):
            await service.grant(RECORD, owner, owner.as_recipient())

    def test_expiry_for(self):
        now = datetime(2025, 6, 1, tzinfo=UTC)
        assert expiry_for(now, 0) is None
        assert expiry_for(now, 2) == datetime(2025, 6, 3, tzinfo=UTC)
        with pytest.raises(ValueError):
            expiry_for(now, -1)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------
class TestEndToEnd:
    """Full flows through the facade."""

    async def test_hello_survives_owner_only_rotation(
        self, service, ledger, blob_store, codec, owner, key_pairs
    ):
        await service.seal_new(RECORD, owner, b"hello")
        old_envelope = await ledger.get_record_envelope(RECORD)

        result = await service.rotate(RECORD, owner, [])
        assert result.generation == 2
        assert await service.open(RECORD, "patient-1", key_pairs["patient"].private_key) == b"hello"

        # The pre-rotation wrapped key fails authentication on the new ciphertext
        new_envelope = await ledger.get_record_envelope(RECORD)
        ciphertext = await blob_store.get(new_envelope.content_ref)
        with pytest.raises(EnvelopeError) as exc_info:
            codec.open(
                ciphertext,
                new_envelope.iv,
                old_envelope.owner_wrapped_key,
                key_pairs["patient"].private_key,
                associated_data=new_envelope.aad(),
            )
        assert isinstance(exc_info.value.__cause__, AuthenticationError)

    async def test_superseded_generation_cannot_be_reopened(
        self, service, ledger, blob_store, owner, doctor_a
    ):
        await service.seal_new(RECORD, owner, b"old secret", [doctor_a])
        old_envelope = await ledger.get_record_envelope(RECORD)
        await service.rotate(RECORD, owner, [doctor_a], new_content=b"new secret")
        current = await ledger.get_record_envelope(RECORD)

        (tombstone,) = await service.record_history(RECORD)
        assert tombstone.generation == 1
        assert tombstone.fingerprint == current.predecessor
        # The old ciphertext remains, but history holds no wrap to open it with
        assert tombstone.content_ref == old_envelope.content_ref
        assert tombstone.content_ref in blob_store
        assert not hasattr(tombstone, "owner_wrapped_key")
        assert not hasattr(tombstone, "iv")
        assert "owner_wrapped_key" not in tombstone.to_dict()

    async def test_sql_ledger_and_s3_blob_store(
        self, sql_ledger, s3_blob_store, codec, owner, doctor_a, doctor_b, key_pairs
    ):
        service = RecordAccessService(sql_ledger, s3_blob_store, codec)

        await service.seal_new(RECORD, owner, CONTENT, [doctor_a, doctor_b])
        result = await service.rotate(RECORD, owner, [doctor_a], new_content=b"v2")
        assert result.is_complete
        assert await service.revoke(RECORD, "doctor-b") is True

        assert await service.open(RECORD, "doctor-a", key_pairs["doctor_a"].private_key) == b"v2"
        with pytest.raises(AccessDeniedError):
            await service.open(RECORD, "doctor-b", key_pairs["doctor_b"].private_key)

        history = await service.record_history(RECORD)
        assert [e.generation for e in history] == [1]
        assert [g.recipient_id for g in await service.list_grants(RECORD)] == ["doctor-a"]


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
class TestCreateRecordAccessService:
    """Tests for create_record_access_service."""

    def test_wires_sql_ledger_and_s3_store(self, tmp_path):
        settings = Settings(
            ledger=LedgerSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"),
            s3=S3Settings(access_key="key", secret_key="secret"),  # noqa: S106
        )
        service = create_record_access_service(settings)

        assert isinstance(service, RecordAccessService)
        assert isinstance(service.ledger, SqlAuthorizationLedger)
        assert isinstance(service.blob_store, ObjectStoreBlobStore)
