"""medseal operator command line.

Subcommands:
- keygen: generate an RSA key pair for a principal
- init-ledger: create the ledger tables
- init-store: create the content bucket

Usage:
    medseal keygen --out-dir ./keys --name doctor-1 --password-env DOCTOR_KEY_PASSWORD
    medseal init-ledger --database-url postgresql+asyncpg://medseal@db/medseal
    medseal init-store --bucket medseal-content
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from medseal import __version__
from medseal.core.config import S3Settings
from medseal.core.settings import get_settings_safe
from medseal.db import create_ledger_engine, init_ledger_schema
from medseal.services.primitives import (
    RSA_KEY_BITS,
    CryptoError,
    generate_asymmetric_key_pair,
)
from medseal.services.storage import ObjectStoreClient, StorageError

logger = logging.getLogger(__name__)


def _keygen(args: argparse.Namespace, default_bits: int) -> int:
    out_dir: Path = args.out_dir
    private_path = out_dir / f"{args.name}.pem"
    public_path = out_dir / f"{args.name}.pub.pem"

    if private_path.exists() and not args.force:
        print(f"ERROR: {private_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    password: bytes | None = None
    if args.password_env:
        value = os.environ.get(args.password_env)
        if not value:
            print(f"ERROR: environment variable {args.password_env} is not set", file=sys.stderr)
            return 1
        password = value.encode("utf-8")

    try:
        key_pair = generate_asymmetric_key_pair(args.bits or default_bits)
    except CryptoError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    out_dir.mkdir(parents=True, exist_ok=True)
    private_path.write_bytes(key_pair.private_pem(password))
    private_path.chmod(0o600)
    public_path.write_bytes(key_pair.public_pem())
    logger.info("Wrote key pair %s to %s", args.name, out_dir)

    print(key_pair.key_id)
    return 0


async def _init_ledger(url: str) -> None:
    engine = create_ledger_engine(url)
    try:
        await init_ledger_schema(engine)
    finally:
        await engine.dispose()


def _init_store(s3_settings: S3Settings, bucket: str) -> int:
    try:
        created = ObjectStoreClient.from_settings(s3_settings).ensure_bucket(bucket)
    except StorageError as e:
        logger.error("Bucket initialization failed: %s", str(e))
        return 1
    print(f"Created bucket {bucket}" if created else f"Bucket {bucket} already exists")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the medseal command."""
    parser = argparse.ArgumentParser(
        prog="medseal",
        description="Selective, revocable access to encrypted medical records",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: MEDSEAL_LOG_LEVEL or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen = subparsers.add_parser("keygen", help="Generate an RSA key pair for a principal")
    keygen.add_argument("--out-dir", type=Path, required=True, help="Directory for the PEM files")
    keygen.add_argument("--name", required=True, help="Base name of the PEM files")
    keygen.add_argument(
        "--bits",
        type=int,
        default=None,
        help="RSA modulus size (default: MEDSEAL_CRYPTO__RSA_KEY_BITS or 3072)",
    )
    keygen.add_argument(
        "--password-env",
        default=None,
        help="Environment variable holding a password to encrypt the private key",
    )
    keygen.add_argument("--force", action="store_true", help="Overwrite existing files")

    init_ledger = subparsers.add_parser("init-ledger", help="Create the ledger tables")
    init_ledger.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL (default: MEDSEAL_LEDGER__URL)",
    )

    init_store = subparsers.add_parser("init-store", help="Create the content bucket")
    init_store.add_argument(
        "--bucket",
        default=None,
        help="Bucket name (default: MEDSEAL_S3__BUCKET)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the medseal command.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    args = build_parser().parse_args(argv)
    settings = get_settings_safe()

    level = (args.log_level or (settings.log_level if settings else "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "keygen":
        default_bits = settings.crypto.rsa_key_bits if settings else RSA_KEY_BITS
        return _keygen(args, default_bits)

    if args.command == "init-store":
        s3_settings = settings.s3 if settings else S3Settings()
        return _init_store(s3_settings, args.bucket or s3_settings.bucket)

    url = args.database_url or (settings.ledger.url if settings else None)
    if not url:
        print("ERROR: no database URL (use --database-url or MEDSEAL_LEDGER__URL)", file=sys.stderr)
        return 1
    try:
        asyncio.run(_init_ledger(url))
    except Exception as e:
        logger.error("Ledger initialization failed: %s", str(e))
        return 1
    print("Ledger schema initialized")
    return 0


if __name__ == "__main__":
    sys.exit(main())
