"""Pytest configuration and shared fixtures.

Key pairs are generated once per session at the minimum supported size,
and the codec uses a reduced PBKDF2 iteration count, so the suite stays
fast. Production defaults are covered in test_config.py.
"""

from collections.abc import AsyncGenerator, Generator

import boto3
import pytest
from botocore.config import Config
from moto import mock_aws

from medseal.db import create_ledger_engine, create_session_factory, init_ledger_schema
from medseal.services.blob_store import InMemoryBlobStore, ObjectStoreBlobStore
from medseal.services.envelope import EnvelopeCodec, OwnerCredentials, Recipient
from medseal.services.ledger import InMemoryAuthorizationLedger, SqlAuthorizationLedger
from medseal.services.primitives import KeyPair, generate_asymmetric_key_pair
from medseal.services.records import RecordAccessService
from medseal.services.storage import ObjectStoreClient

TEST_KEY_BITS = 2048
TEST_KDF_ITERATIONS = 1_000
TEST_BUCKET = "medseal-test"


# ---------------------------------------------------------------------------
# Key material (session-scoped for speed)
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def key_pairs() -> dict[str, KeyPair]:
    """One RSA key pair per test principal."""
    names = ("patient", "doctor_a", "doctor_b", "doctor_c", "outsider")
    return {name: generate_asymmetric_key_pair(TEST_KEY_BITS) for name in names}


@pytest.fixture
def owner(key_pairs) -> OwnerCredentials:
    return OwnerCredentials(owner_id="patient-1", private_key=key_pairs["patient"].private_key)


@pytest.fixture
def doctor_a(key_pairs) -> Recipient:
    return Recipient(recipient_id="doctor-a", public_key=key_pairs["doctor_a"].public_key)


@pytest.fixture
def doctor_b(key_pairs) -> Recipient:
    return Recipient(recipient_id="doctor-b", public_key=key_pairs["doctor_b"].public_key)


@pytest.fixture
def doctor_c(key_pairs) -> Recipient:
    return Recipient(recipient_id="doctor-c", public_key=key_pairs["doctor_c"].public_key)


# ---------------------------------------------------------------------------
# Codec and collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def codec() -> EnvelopeCodec:
    return EnvelopeCodec(kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def ledger() -> InMemoryAuthorizationLedger:
    return InMemoryAuthorizationLedger()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def service(ledger, blob_store, codec) -> RecordAccessService:
    return RecordAccessService(ledger, blob_store, codec, propagation_concurrency=4)


# ---------------------------------------------------------------------------
# SQL ledger (aiosqlite file database per test)
# ---------------------------------------------------------------------------
@pytest.fixture
async def sql_ledger(tmp_path) -> AsyncGenerator[SqlAuthorizationLedger, None]:
    """SQL ledger backed by a fresh SQLite file."""
    engine = create_ledger_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_ledger_schema(engine)
    yield SqlAuthorizationLedger(create_session_factory(engine))
    await engine.dispose()


# ---------------------------------------------------------------------------
# S3 (moto)
# ---------------------------------------------------------------------------
@pytest.fixture
def object_store_client() -> Generator[ObjectStoreClient, None, None]:
    """ObjectStoreClient whose boto3 client is intercepted by moto."""
    with mock_aws():
        client = ObjectStoreClient(
            endpoint_url="http://mocked",
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
            region="us-east-1",
        )
        # Without an endpoint override moto intercepts every request
        client._client = boto3.client(
            "s3",
            aws_access_key_id="test_access_key",
            aws_secret_access_key="test_secret_key",  # noqa: S106
            region_name="us-east-1",
            config=Config(signature_version="s3v4"),
        )
        client.ensure_bucket(TEST_BUCKET)
        yield client


@pytest.fixture
def s3_blob_store(object_store_client) -> ObjectStoreBlobStore:
    return ObjectStoreBlobStore(object_store_client, TEST_BUCKET, prefix="blobs/")
