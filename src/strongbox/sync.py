"""Synchronization service: mirrors escrow events into the document store.

Delivery is at-least-once and unordered, so every write is conditional:
hides are create-if-absent keyed by transaction signature, claims are a
compare-and-set from ``active`` to ``claimed``. Replaying any event, in any
order, converges on the same documents.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from strongbox.constants import (
    DEPOSITS_COLLECTION,
    PENDING_CLAIMS_COLLECTION,
    DepositStatus,
)
from strongbox.extractor import ClaimEvent, DepositEvent
from strongbox.store import StoreError, StoreTimeoutError

if TYPE_CHECKING:
    from strongbox.config import StrongboxConfig
    from strongbox.store import DocumentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Identifiers in this range are treated as unix seconds for ``hiddenAt``.
_MAX_PLAUSIBLE_TIMESTAMP = 10**11


class SyncAction(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    PENDING = "pending"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class SyncResult:
    action: SyncAction
    signature: str
    document_id: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_unix(seconds: int) -> str:
    return datetime.fromtimestamp(seconds, timezone.utc).isoformat()


def _hidden_at(event: DepositEvent) -> str:
    if 0 < event.identifier < _MAX_PLAUSIBLE_TIMESTAMP:
        return _iso_from_unix(event.identifier)
    if event.block_time is not None:
        return _iso_from_unix(event.block_time)
    return _now_iso()


def deposit_document(event: DepositEvent) -> dict[str, Any]:
    """Initial ``active`` document for a confirmed hide."""
    now = _now_iso()
    return {
        "walletAddress": event.wallet_address,
        "amount": event.amount,
        "tokenType": event.token_mint or "UNKNOWN",
        "status": DepositStatus.ACTIVE.value,
        "hiddenAt": _hidden_at(event),
        "createdAt": now,
        "updatedAt": now,
        "claimedAt": None,
        "claimedBy": None,
        "claimSignature": None,
        "recordAddress": event.record_address,
        "identifier": event.identifier,
        "metadata": {
            "blockTime": event.block_time,
            "slot": event.slot,
            "fee": event.fee,
            "programId": event.program_id,
            "recordAddress": event.record_address,
        },
    }


def _claim_updates(claim_signature: str, claimed_by: str, block_time: int | None) -> dict[str, Any]:
    now = _now_iso()
    return {
        "status": DepositStatus.CLAIMED.value,
        "claimedAt": _iso_from_unix(block_time) if block_time is not None else now,
        "claimedBy": claimed_by,
        "claimSignature": claim_signature,
        "updatedAt": now,
    }


class SyncService:
    """Applies ``DepositEvent``/``ClaimEvent`` to a ``DocumentStore``.

    - Every store call is bounded by ``timeout_secs`` and retried
      ``retries`` times on retryable errors, ``retry_delay`` apart.
    - A claim whose hide document is not there yet is looked up
      ``claim_lookup_attempts`` times with doubling delay, then parked as
      a pending marker that the hide path applies when it lands.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        deposits_collection: str = DEPOSITS_COLLECTION,
        pending_collection: str = PENDING_CLAIMS_COLLECTION,
        timeout_secs: float = 10.0,
        retries: int = 2,
        retry_delay: float = 0.5,
        claim_lookup_attempts: int = 3,
        claim_lookup_delay: float = 0.5,
    ) -> None:
        self._store = store
        self._deposits = deposits_collection
        self._pending = pending_collection
        self._timeout = timeout_secs
        self._retries = retries
        self._retry_delay = retry_delay
        self._claim_lookup_attempts = max(1, claim_lookup_attempts)
        self._claim_lookup_delay = claim_lookup_delay
        self._counts: dict[SyncAction, int] = {action: 0 for action in SyncAction}
        self._transient_failures = 0
        self._last_sync_at: str | None = None

    @classmethod
    def from_config(cls, store: DocumentStore, config: StrongboxConfig) -> SyncService:
        return cls(
            store,
            deposits_collection=config.deposits_collection,
            pending_collection=config.pending_collection,
            timeout_secs=config.store_timeout_secs,
            retries=config.store_retries,
            retry_delay=config.store_retry_delay,
            claim_lookup_attempts=config.claim_lookup_attempts,
            claim_lookup_delay=config.claim_lookup_delay,
        )

    @property
    def store(self) -> DocumentStore:
        return self._store

    # -- bounded store calls -------------------------------------------------

    async def _call(self, what: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one store operation with a time bound and retry on transient errors."""
        max_attempts = 1 + self._retries
        for attempt in range(max_attempts):
            try:
                try:
                    return await asyncio.wait_for(operation(), timeout=self._timeout)
                except asyncio.TimeoutError as exc:
                    raise StoreTimeoutError(
                        f"{what} exceeded {self._timeout:.1f}s"
                    ) from exc
            except StoreError as exc:
                if not exc.retryable:
                    raise
                if attempt == max_attempts - 1:
                    self._transient_failures += 1
                    logger.warning(
                        "Store %s failed after %d attempt(s): %s", what, max_attempts, exc,
                    )
                    raise
                logger.warning(
                    "Store %s attempt %d/%d failed (%s), retrying in %.1fs...",
                    what, attempt + 1, max_attempts, exc, self._retry_delay,
                )
                await asyncio.sleep(self._retry_delay)
        raise RuntimeError("unreachable")  # pragma: no cover

    # -- public API ----------------------------------------------------------

    async def upsert(self, event: DepositEvent | ClaimEvent) -> SyncResult:
        """Apply one event. Safe to call any number of times with the same event."""
        if isinstance(event, DepositEvent):
            result = await self._upsert_deposit(event)
        else:
            result = await self._upsert_claim(event)
        self._counts[result.action] += 1
        self._last_sync_at = _now_iso()
        return result

    async def _upsert_deposit(self, event: DepositEvent) -> SyncResult:
        doc_id = event.signature
        created = await self._call(
            "create",
            lambda: self._store.create(self._deposits, doc_id, deposit_document(event)),
        )
        if created:
            logger.info(
                "Created deposit %s (%d units, wallet %s).",
                doc_id, event.amount, event.wallet_address,
                extra={"signature": doc_id},
            )
        else:
            logger.info(
                "Deposit %s already recorded; skipping.", doc_id,
                extra={"signature": doc_id},
            )

        # A claim may have been parked before this hide arrived.
        await self._apply_pending(event.record_address, doc_id)
        action = SyncAction.CREATED if created else SyncAction.DUPLICATE
        return SyncResult(action, event.signature, doc_id)

    async def _upsert_claim(self, event: ClaimEvent) -> SyncResult:
        updates = _claim_updates(event.signature, event.claimed_by, event.block_time)

        found = await self._lookup_deposit(event.record_address, self._claim_lookup_attempts)
        if found is not None:
            doc_id, _ = found
            if await self._apply_claim(doc_id, updates):
                logger.info(
                    "Deposit %s claimed by %s.", doc_id, event.claimed_by,
                    extra={"signature": event.signature},
                )
                return SyncResult(SyncAction.CLAIMED, event.signature, doc_id)
            logger.info(
                "Deposit %s not active; claim %s is a no-op.", doc_id, event.signature,
                extra={"signature": event.signature},
            )
            return SyncResult(SyncAction.ALREADY_CLAIMED, event.signature, doc_id)

        marker = {
            "recordAddress": event.record_address,
            "claimSignature": event.signature,
            "claimedBy": event.claimed_by,
            "blockTime": event.block_time,
            "slot": event.slot,
            "createdAt": _now_iso(),
        }
        await self._call(
            "create",
            lambda: self._store.create(self._pending, event.record_address, marker),
        )
        logger.warning(
            "Claim %s arrived before its deposit (record %s); parked as pending.",
            event.signature, event.record_address,
            extra={"signature": event.signature},
        )

        # The hide may have landed between the lookup and the marker write.
        found = await self._lookup_deposit(event.record_address, 1)
        if found is None:
            return SyncResult(SyncAction.PENDING, event.signature)
        doc_id, _ = found
        await self._apply_pending(event.record_address, doc_id)
        return SyncResult(SyncAction.RECONCILED, event.signature, doc_id)

    # -- helpers -------------------------------------------------------------

    async def _lookup_deposit(
        self, record_address: str, attempts: int,
    ) -> tuple[str, dict[str, Any]] | None:
        delay = self._claim_lookup_delay
        for attempt in range(attempts):
            found = await self._call(
                "find",
                lambda: self._store.find_one(self._deposits, "recordAddress", record_address),
            )
            if found is not None:
                return found
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
                delay *= 2
        return None

    async def _apply_claim(self, doc_id: str, updates: dict[str, Any]) -> bool:
        return await self._call(
            "compare_and_set",
            lambda: self._store.compare_and_set(
                self._deposits, doc_id, "status", DepositStatus.ACTIVE.value, updates,
            ),
        )

    async def _apply_pending(self, record_address: str, doc_id: str) -> bool:
        """Apply and remove a parked claim for ``record_address``, if any."""
        marker = await self._call("get", lambda: self._store.get(self._pending, record_address))
        if marker is None:
            return False
        updates = _claim_updates(
            marker["claimSignature"], marker["claimedBy"], marker.get("blockTime"),
        )
        applied = await self._apply_claim(doc_id, updates)
        await self._call("delete", lambda: self._store.delete(self._pending, record_address))
        logger.info(
            "Reconciled pending claim %s onto deposit %s (applied=%s).",
            marker["claimSignature"], doc_id, applied,
            extra={"signature": marker["claimSignature"]},
        )
        return applied

    # -- monitoring ----------------------------------------------------------

    def health(self) -> dict[str, object]:
        """Return sync counters for monitoring."""
        return {
            **{f"{action.value}_count": count for action, count in self._counts.items()},
            "transient_failures": self._transient_failures,
            "last_sync_at": self._last_sync_at,
            "store_timeout_secs": self._timeout,
            "store_retries": self._retries,
            "claim_lookup_attempts": self._claim_lookup_attempts,
        }

    async def close(self) -> None:
        await self._store.close()
