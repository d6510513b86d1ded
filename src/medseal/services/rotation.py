"""Key rotation engine.

A rotation moves a record to a new DEK generation. It runs as a fixed
sequence of stages, and only the owner commit is a point of no return:

    STAGED -> RESEALED -> CONTENT_PUBLISHED -> OWNER_COMMITTED
           -> PROPAGATING -> COMPLETE | INCOMPLETE

1. STAGED: read the current envelope and grants, check preconditions,
   and recover the plaintext with the owner's wrapped key (unless
   replacement content was supplied).
2. RESEALED: seal the content under a fresh DEK for the owner and every
   retained recipient.
3. CONTENT_PUBLISHED: put the new ciphertext into the blob store.
4. OWNER_COMMITTED: write the new envelope (owner wrap and content ref)
   as one ledger update. Until this returns, nothing is visible and the
   whole rotation can be retried from the start.
5. PROPAGATING: write each retained recipient's new wrapped key to its
   grant. These writes target disjoint entries and run concurrently,
   but only after step 4 has returned.

Once step 4 has returned, no write failure in step 5 fails the rotation,
whatever its type. It is reported as PartialRotationError, which carries
the wrapped keys still to be written; resume() retries exactly those
writes and never derives another DEK.
Recipients left out of the retained set keep their old grants, which
now wrap a DEK that cannot open the new ciphertext. Removing those
grants is a separate revocation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from medseal.services.envelope import OwnerCredentials, Recipient, WrappedKey, build_aad

if TYPE_CHECKING:
    from medseal.services.blob_store import BlobStore
    from medseal.services.envelope import EnvelopeCodec
    from medseal.services.ledger import AuthorizationLedger

logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_CONCURRENCY = 8


class RotationStage(str, Enum):
    """Progress of a single rotation."""

    STAGED = "staged"
    RESEALED = "resealed"
    CONTENT_PUBLISHED = "content_published"
    OWNER_COMMITTED = "owner_committed"
    PROPAGATING = "propagating"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class RotationStatus(str, Enum):
    """Caller-visible outcome of a rotation that reached the owner commit."""

    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a rotation.

    Attributes:
        record_ref: Record that was rotated.
        content_ref: Content hash of the new ciphertext.
        generation: DEK generation the record is now on.
        content_changed: Whether the plaintext differs from the previous generation.
        status: COMPLETE once every retained recipient holds the new wrap.
        succeeded: Principals holding the new generation (owner included).
        failed: Principals whose grant update has not been written yet.
    """

    record_ref: str
    content_ref: str
    generation: int
    content_changed: bool
    status: RotationStatus
    succeeded: frozenset[str]
    failed: frozenset[str] = frozenset()

    @property
    def is_complete(self) -> bool:
        return self.status == RotationStatus.COMPLETE


@dataclass(frozen=True)
class PendingPropagation:
    """Grant writes still owed after an owner commit.

    Holds wrapped keys only; the DEK itself is gone by the time this exists.

    Attributes:
        result: The INCOMPLETE result these writes would complete.
        wrapped_keys: Recipient id to the wrapped key it must receive.
    """

    result: RotationResult
    wrapped_keys: Mapping[str, WrappedKey]

    @property
    def record_ref(self) -> str:
        return self.result.record_ref

    @property
    def generation(self) -> int:
        return self.result.generation

    @property
    def recipients(self) -> frozenset[str]:
        return frozenset(self.wrapped_keys)


class RotationError(Exception):
    """Base exception for rotation failures."""

    def __init__(self, message: str, *, record_ref: str | None = None) -> None:
        self.message = message
        self.record_ref = record_ref
        super().__init__(message)


class RotationPreconditionError(RotationError):
    """Raised before any side effect when a rotation cannot start."""


class PartialRotationError(RotationError):
    """Raised when the owner commit succeeded but some grant writes failed.

    The record is already on the new generation. Retry with
    KeyRotationEngine.resume(error.pending); do not rotate again.

    Attributes:
        result: INCOMPLETE rotation result.
        pending: Grant writes still owed.
        errors: Recipient id to the exception that stopped its write.
    """

    retryable = True

    def __init__(
        self,
        result: RotationResult,
        pending: PendingPropagation,
        errors: Mapping[str, Exception],
    ) -> None:
        self.result = result
        self.pending = pending
        self.errors = dict(errors)
        super().__init__(
            f"Rotation of {result.record_ref} to generation {result.generation} is incomplete: "
            f"{len(result.failed)} recipient(s) pending",
            record_ref=result.record_ref,
        )

    @property
    def succeeded(self) -> frozenset[str]:
        return self.result.succeeded

    @property
    def failed(self) -> frozenset[str]:
        return self.result.failed


@dataclass(frozen=True)
class RotationRequest:
    """One record's input to rotate_many()."""

    record_ref: str
    owner: OwnerCredentials
    retained: tuple[Recipient, ...] = ()
    new_content: bytes | None = field(default=None, repr=False)


class BulkRotationStatus(str, Enum):
    """Per-record status in a bulk rotation."""

    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


@dataclass(frozen=True)
class BulkRotationOutcome:
    """Per-record entry of rotate_many().

    Attributes:
        record_ref: Record the entry describes.
        status: COMPLETE, INCOMPLETE (see pending), or FAILED before the
            owner commit (see error).
        result: Rotation result when the owner commit happened.
        pending: Grant writes still owed for an INCOMPLETE record.
        error: Exception that stopped a FAILED record.
    """

    record_ref: str
    status: BulkRotationStatus
    result: RotationResult | None = None
    pending: PendingPropagation | None = None
    error: Exception | None = None


class KeyRotationEngine:
    """Rotates record DEKs against an authorization ledger and blob store.

    The engine holds no key material between calls; the owner's
    credentials are passed in for each rotation.

    Example:
        engine = KeyRotationEngine(ledger, blob_store, EnvelopeCodec())
        try:
            result = await engine.rotate(record_ref, owner, [doctor])
        except PartialRotationError as e:
            result = await engine.resume(e.pending)
    """

    def __init__(
        self,
        ledger: AuthorizationLedger,
        blob_store: BlobStore,
        codec: EnvelopeCodec,
        *,
        propagation_concurrency: int = DEFAULT_PROPAGATION_CONCURRENCY,
    ) -> None:
        """Initialize the engine.

        Args:
            ledger: Authorization ledger view.
            blob_store: Content-addressed ciphertext store.
            codec: Envelope codec used to reseal content.
            propagation_concurrency: Maximum concurrent grant writes.
        """
        if propagation_concurrency < 1:
            raise ValueError("propagation_concurrency must be at least 1")
        self._ledger = ledger
        self._blob_store = blob_store
        self._codec = codec
        self._propagation_concurrency = propagation_concurrency

    async def rotate(
        self,
        record_ref: str,
        owner: OwnerCredentials,
        retained: Iterable[Recipient],
        new_content: bytes | None = None,
    ) -> RotationResult:
        """Move a record to a new DEK generation.

        Args:
            record_ref: Record to rotate.
            owner: Owner principal and private key.
            retained: Secondary recipients that keep access; each must
                already hold a grant. The owner is always included.
            new_content: Replacement plaintext, or None to keep the content.

        Returns:
            COMPLETE RotationResult.

        Raises:
            RotationPreconditionError: If the owner or a retained recipient does
                not match the ledger. Nothing has been written.
            LedgerError, BlobStoreError, EnvelopeError: If a step before the owner
                commit fails. Nothing is visible; retry rotate().
            PartialRotationError: If some grant writes failed after the owner commit.
        """
        # STAGED
        envelope = await self._ledger.get_record_envelope(record_ref)
        grants = await self._ledger.get_grants(record_ref)
        recipients = self._check_preconditions(
            record_ref, owner, envelope.owner_id, envelope.owner_wrapped_key, retained,
            {g.recipient_id for g in grants},
        )

        if new_content is None:
            ciphertext = await self._blob_store.get(envelope.content_ref)
            content = self._codec.open(
                ciphertext,
                envelope.iv,
                envelope.owner_wrapped_key,
                owner.private_key,
                associated_data=envelope.aad(),
                expected_mac=envelope.content_mac,
            )
            content_changed = False
        else:
            content = new_content
            content_changed = not self._codec.content_matches(
                new_content, envelope.owner_wrapped_key, owner.private_key, envelope.content_mac
            )
        self._log_stage(record_ref, RotationStage.STAGED)

        # RESEALED
        generation = envelope.generation + 1
        sealed = self._codec.seal(
            content,
            [owner.as_recipient(), *recipients],
            generation=generation,
            associated_data=build_aad(record_ref, generation),
        )
        del content
        self._log_stage(record_ref, RotationStage.RESEALED)

        # CONTENT_PUBLISHED
        content_ref = await self._blob_store.put(sealed.ciphertext)
        self._log_stage(record_ref, RotationStage.CONTENT_PUBLISHED)

        # OWNER_COMMITTED
        new_envelope = sealed.to_envelope(
            record_ref=record_ref,
            owner_id=owner.owner_id,
            content_ref=content_ref,
            predecessor=envelope.fingerprint(),
        )
        await self._ledger.commit_record_update(record_ref, new_envelope)
        logger.info(
            "Record %s committed at generation %d (content %s..., changed=%s)",
            record_ref,
            generation,
            content_ref[:16],
            content_changed,
        )

        # PROPAGATING
        wraps = {r.recipient_id: sealed.wrapped_keys[r.recipient_id] for r in recipients}
        base = RotationResult(
            record_ref=record_ref,
            content_ref=content_ref,
            generation=generation,
            content_changed=content_changed,
            status=RotationStatus.INCOMPLETE,
            succeeded=frozenset({owner.owner_id}),
            failed=frozenset(wraps),
        )
        return await self._finish(base, wraps)

    async def resume(self, pending: PendingPropagation) -> RotationResult:
        """Retry the grant writes left over from a partial rotation.

        Only the pending recipients are written, with the wrapped keys
        produced by the original rotation.

        Returns:
            COMPLETE RotationResult.

        Raises:
            PartialRotationError: If some writes still fail.
        """
        logger.info(
            "Resuming rotation of %s at generation %d for %d recipient(s)",
            pending.record_ref,
            pending.generation,
            len(pending.wrapped_keys),
        )
        return await self._finish(pending.result, dict(pending.wrapped_keys))

    async def rotate_many(
        self, requests: Iterable[RotationRequest]
    ) -> dict[str, BulkRotationOutcome]:
        """Rotate several records independently.

        Each record is its own unit of work: a failure on one record is
        recorded in its outcome and never affects the others.

        Returns:
            Record ref to BulkRotationOutcome, one entry per request.

        Raises:
            ValueError: If a record appears more than once.
        """
        request_list = list(requests)
        refs = [r.record_ref for r in request_list]
        if len(set(refs)) != len(refs):
            raise ValueError("Each record may appear only once in a bulk rotation")

        outcomes = await asyncio.gather(*(self._rotate_one(r) for r in request_list))
        by_status: dict[BulkRotationStatus, int] = {}
        for outcome in outcomes:
            by_status[outcome.status] = by_status.get(outcome.status, 0) + 1
        logger.info(
            "Bulk rotation finished: %d record(s), %s",
            len(outcomes),
            ", ".join(f"{s.value}={n}" for s, n in sorted(by_status.items())),
        )
        return {o.record_ref: o for o in outcomes}

    async def _rotate_one(self, request: RotationRequest) -> BulkRotationOutcome:
        try:
            result = await self.rotate(
                request.record_ref,
                request.owner,
                request.retained,
                request.new_content,
            )
        except PartialRotationError as e:
            return BulkRotationOutcome(
                record_ref=request.record_ref,
                status=BulkRotationStatus.INCOMPLETE,
                result=e.result,
                pending=e.pending,
                error=e,
            )
        except Exception as e:
            logger.error("Rotation of %s failed: %s", request.record_ref, str(e))
            return BulkRotationOutcome(
                record_ref=request.record_ref,
                status=BulkRotationStatus.FAILED,
                error=e,
            )
        return BulkRotationOutcome(
            record_ref=request.record_ref,
            status=BulkRotationStatus.COMPLETE,
            result=result,
        )

    def _check_preconditions(
        self,
        record_ref: str,
        owner: OwnerCredentials,
        owner_id: str,
        owner_wrap: WrappedKey,
        retained: Iterable[Recipient],
        granted: set[str],
    ) -> list[Recipient]:
        if owner.owner_id != owner_id:
            raise RotationPreconditionError(
                f"{owner.owner_id} is not the owner of record {record_ref}",
                record_ref=record_ref,
            )
        if owner.as_recipient().key_id != owner_wrap.recipient_key_id:
            raise RotationPreconditionError(
                f"Owner key does not match the key record {record_ref} is wrapped for",
                record_ref=record_ref,
            )

        recipients: list[Recipient] = []
        seen: set[str] = set()
        for recipient in retained:
            if recipient.recipient_id == owner_id:
                continue
            if recipient.recipient_id in seen:
                raise RotationPreconditionError(
                    f"Recipient {recipient.recipient_id} is listed more than once",
                    record_ref=record_ref,
                )
            if recipient.recipient_id not in granted:
                raise RotationPreconditionError(
                    f"Recipient {recipient.recipient_id} holds no grant on record {record_ref}",
                    record_ref=record_ref,
                )
            seen.add(recipient.recipient_id)
            recipients.append(recipient)
        return recipients

    async def _finish(
        self, base: RotationResult, wraps: dict[str, WrappedKey]
    ) -> RotationResult:
        self._log_stage(base.record_ref, RotationStage.PROPAGATING)
        errors = await self._propagate(base.record_ref, wraps)

        succeeded = base.succeeded | (frozenset(wraps) - frozenset(errors))
        if not errors:
            self._log_stage(base.record_ref, RotationStage.COMPLETE)
            logger.info(
                "Rotation of %s complete at generation %d (%d principal(s))",
                base.record_ref,
                base.generation,
                len(succeeded),
            )
            return RotationResult(
                record_ref=base.record_ref,
                content_ref=base.content_ref,
                generation=base.generation,
                content_changed=base.content_changed,
                status=RotationStatus.COMPLETE,
                succeeded=succeeded,
            )

        result = RotationResult(
            record_ref=base.record_ref,
            content_ref=base.content_ref,
            generation=base.generation,
            content_changed=base.content_changed,
            status=RotationStatus.INCOMPLETE,
            succeeded=succeeded,
            failed=frozenset(errors),
        )
        pending = PendingPropagation(
            result=result,
            wrapped_keys={rid: wraps[rid] for rid in errors},
        )
        self._log_stage(base.record_ref, RotationStage.INCOMPLETE)
        logger.warning(
            "Rotation of %s at generation %d incomplete: failed=%s",
            base.record_ref,
            base.generation,
            sorted(errors),
        )
        raise PartialRotationError(result, pending, errors)

    async def _propagate(
        self, record_ref: str, wraps: Mapping[str, WrappedKey]
    ) -> dict[str, Exception]:
        """Write every wrapped key to its grant.

        Runs after the owner commit, so every Exception is recorded against
        its recipient rather than raised; cancellation still propagates.

        Returns:
            Recipient id to the exception for the writes that failed.
        """
        semaphore = asyncio.Semaphore(self._propagation_concurrency)

        async def write(recipient_id: str, wrapped_key: WrappedKey) -> Exception | None:
            async with semaphore:
                try:
                    await self._ledger.commit_grant_update(record_ref, recipient_id, wrapped_key)
                except Exception as e:
                    logger.warning(
                        "Grant update for %s on %s failed: %s: %s",
                        recipient_id,
                        record_ref,
                        type(e).__name__,
                        str(e),
                    )
                    return e
            logger.debug(
                "Grant for %s on %s at generation %d",
                recipient_id,
                record_ref,
                wrapped_key.generation,
            )
            return None

        ids = list(wraps)
        outcomes = await asyncio.gather(*(write(rid, wraps[rid]) for rid in ids))
        return {rid: err for rid, err in zip(ids, outcomes, strict=True) if err is not None}

    @staticmethod
    def _log_stage(record_ref: str, stage: RotationStage) -> None:
        logger.debug("Rotation of %s: %s", record_ref, stage.value)
