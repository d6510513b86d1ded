"""Revocation engine: removal of access grants from the ledger.

Revocation is ledger access removal only. It deletes the recipient's
grant entry and touches nothing else: the DEK generation, the content,
and other recipients' grants stay as they are. A revoked recipient who
kept a copy of the ciphertext and their old wrapped key can still
decrypt that copy. Cutting them off cryptographically requires a
rotation that leaves them out of the retained set (see
KeyRotationEngine.rotate).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from medseal.services.ledger import AuthorizationLedger

logger = logging.getLogger(__name__)


class RevocationEngine:
    """Removes grants from an authorization ledger."""

    def __init__(self, ledger: AuthorizationLedger) -> None:
        self._ledger = ledger

    async def revoke(self, record_ref: str, recipient_id: str) -> bool:
        """Remove a recipient's grant on a record.

        Idempotent: revoking an absent grant succeeds.

        This does not re-key the record. See the module docstring.

        Args:
            record_ref: Record the grant is on.
            recipient_id: Principal whose grant is removed.

        Returns:
            True if a grant was removed, False if there was none.

        Raises:
            LedgerError: If the ledger write fails.
        """
        removed = await self._ledger.remove_grant(record_ref, recipient_id)
        if removed:
            logger.info("Revoked grant for %s on record %s", recipient_id, record_ref)
        else:
            logger.debug("No grant for %s on record %s; nothing to revoke", recipient_id, record_ref)
        return removed

    async def revoke_expired(self, record_ref: str, now: datetime | None = None) -> list[str]:
        """Remove every expired grant on a record.

        Args:
            record_ref: Record to sweep.
            now: Reference time; defaults to the current UTC time.

        Returns:
            Ids of the recipients whose grants were removed, sorted.
        """
        now = now or datetime.now(UTC)
        removed: list[str] = []
        for grant in await self._ledger.get_grants(record_ref):
            if not grant.is_expired(now):
                continue
            logger.warning(
                "Grant for %s on record %s expired at %s",
                grant.recipient_id,
                record_ref,
                grant.expires_at.isoformat() if grant.expires_at else "-",
            )
            if await self._ledger.remove_grant(record_ref, grant.recipient_id):
                removed.append(grant.recipient_id)
        if removed:
            logger.info("Removed %d expired grant(s) on record %s", len(removed), record_ref)
        return sorted(removed)
