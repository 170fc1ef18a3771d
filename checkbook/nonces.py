"""
CHECKBOOK Nonce Registries

Write-once replay protection at two scopes:

    CardNonceRegistry    (card, digest_hash)       -> consumed
                         global; may be shared by several engines
    CheckNonceRegistry   (account, bearer identity) -> redeemer
                         one redemption per blank check

Both sit on a NonceStore, a lock-guarded versioned map whose only write is
an atomic put-if-absent. Of concurrent claims on the same key exactly one
wins. Records are never deleted except by releasing the exact claim a
failed redemption staged; the version token on the claim makes a stale
release a no-op.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from checkbook.hardening import (
    AtomicCounter,
    CardNonceReused,
    CheckNonceReused,
    ValidationErrors,
    Validators,
)

logger = logging.getLogger(__name__)

NonceKey = Tuple[str, str]


# =============================================================================
# VERSIONED STORE
# =============================================================================

@dataclass(frozen=True)
class NonceRecord:
    """A consumed nonce with the version that wrote it."""
    value: str
    version: int
    claimed_at: str


@dataclass(frozen=True)
class NonceClaim:
    """Handle returned by a successful claim; pass it to release() to compensate."""
    scope: str
    key: NonceKey
    value: str
    version: int


class NonceStore(ABC):
    """Storage contract for nonce registries."""

    @abstractmethod
    def get(self, key: NonceKey) -> Optional[NonceRecord]:
        """Return the record for key, if any."""

    @abstractmethod
    def put_if_absent(self, key: NonceKey, value: str) -> Tuple[bool, NonceRecord]:
        """
        Atomically write key if it has no record.

        Returns (True, new_record) on success, (False, existing_record)
        when the key was already consumed.
        """

    @abstractmethod
    def remove_if_version(self, key: NonceKey, version: int) -> bool:
        """Remove key only if its record still carries version."""

    @abstractmethod
    def items(self) -> List[Tuple[NonceKey, NonceRecord]]:
        """Snapshot of all records."""


class InMemoryNonceStore(NonceStore):
    """
    Thread-safe in-process store.

    Compare-and-set under a single re-entrant lock with a monotonically
    increasing version counter.
    """

    def __init__(self):
        self._data: Dict[NonceKey, NonceRecord] = {}
        self._lock = threading.RLock()
        self._version_counter = AtomicCounter(0)

    def get(self, key: NonceKey) -> Optional[NonceRecord]:
        with self._lock:
            return self._data.get(key)

    def put_if_absent(self, key: NonceKey, value: str) -> Tuple[bool, NonceRecord]:
        with self._lock:
            current = self._data.get(key)
            if current is not None:
                return (False, current)

            record = NonceRecord(
                value=value,
                version=self._version_counter.increment(),
                claimed_at=datetime.now(timezone.utc).isoformat(),
            )
            self._data[key] = record
            return (True, record)

    def remove_if_version(self, key: NonceKey, version: int) -> bool:
        with self._lock:
            current = self._data.get(key)
            if current is None or current.version != version:
                return False
            del self._data[key]
            return True

    def items(self) -> List[Tuple[NonceKey, NonceRecord]]:
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def _identity(value: str, field_name: str) -> str:
    result = Validators.validate_address(value, field_name)
    if not result.is_valid:
        raise ValidationErrors(result.errors)
    return result.sanitized_value


def _digest(value: str, field_name: str) -> str:
    result = Validators.validate_digest(value, field_name)
    if not result.is_valid:
        raise ValidationErrors(result.errors)
    return result.sanitized_value


# =============================================================================
# CARD NONCES
# =============================================================================

class CardNonceRegistry:
    """
    Global single-use digests per card.

    A digest consumed by a card through any engine sharing this registry can
    never again be accepted for that card.
    """

    SCOPE = "card"
    CONSUMED = "consumed"

    def __init__(self, store: Optional[NonceStore] = None):
        self._store = store or InMemoryNonceStore()

    def _key(self, card: str, digest_hash: str) -> NonceKey:
        return (_identity(card, "card"), _digest(digest_hash, "digest_hash"))

    def is_used(self, card: str, digest_hash: str) -> bool:
        return self._store.get(self._key(card, digest_hash)) is not None

    def claim(self, card: str, digest_hash: str) -> NonceClaim:
        """Consume digest_hash for card, or raise CardNonceReused."""
        key = self._key(card, digest_hash)
        ok, record = self._store.put_if_absent(key, self.CONSUMED)
        if not ok:
            logger.warning("Card nonce replay: card=%s digest=%s", key[0], key[1])
            raise CardNonceReused()
        return NonceClaim(scope=self.SCOPE, key=key, value=record.value, version=record.version)

    def claim_all(self, pairs: Sequence[Tuple[str, str]]) -> List[NonceClaim]:
        """
        Consume every (card, digest_hash) pair or none of them.

        If any claim collides, claims already made by this batch are released
        before the rejection propagates.
        """
        claims: List[NonceClaim] = []
        try:
            for card, digest_hash in pairs:
                claims.append(self.claim(card, digest_hash))
        except CardNonceReused:
            for claim in reversed(claims):
                self.release(claim)
            raise
        return claims

    def release(self, claim: NonceClaim) -> bool:
        """Undo a claim staged by a redemption that did not complete."""
        if claim.scope != self.SCOPE:
            raise ValueError(f"Cannot release {claim.scope} claim in card registry")
        released = self._store.remove_if_version(claim.key, claim.version)
        if released:
            logger.info("Released card nonce: card=%s digest=%s", claim.key[0], claim.key[1])
        return released

    def snapshot(self) -> List[Dict[str, Any]]:
        return sorted(
            ({"card": k[0], "digest_hash": k[1]} for k, _ in self._store.items()),
            key=lambda d: (d["card"], d["digest_hash"]),
        )

    def restore(self, entries: Iterable[Dict[str, Any]]) -> None:
        for entry in entries:
            self._store.put_if_absent(self._key(entry["card"], entry["digest_hash"]), self.CONSUMED)

    def __len__(self) -> int:
        return len(self._store.items())


# =============================================================================
# CHECK NONCES
# =============================================================================

class CheckNonceRegistry:
    """
    At-most-once redemption per (account, bearer identity).

    The stored value is the recipient that redeemed the check.
    """

    SCOPE = "check"

    def __init__(self, store: Optional[NonceStore] = None):
        self._store = store or InMemoryNonceStore()

    def _key(self, account: str, bearer_secret_identity: str) -> NonceKey:
        return (_identity(account, "account"), _identity(bearer_secret_identity, "bearer_secret_identity"))

    def peek(self, account: str, bearer_secret_identity: str) -> Optional[str]:
        """Redeemer of the check, or None if it was never redeemed."""
        record = self._store.get(self._key(account, bearer_secret_identity))
        return record.value if record is not None else None

    def claim(self, account: str, bearer_secret_identity: str, redeemer: str) -> NonceClaim:
        """Record redeemer for the check, or raise CheckNonceReused."""
        key = self._key(account, bearer_secret_identity)
        ok, record = self._store.put_if_absent(key, _identity(redeemer, "redeemer"))
        if not ok:
            logger.warning(
                "Check nonce replay: account=%s bearer=%s redeemed_by=%s",
                key[0], key[1], record.value,
            )
            raise CheckNonceReused()
        return NonceClaim(scope=self.SCOPE, key=key, value=record.value, version=record.version)

    def release(self, claim: NonceClaim) -> bool:
        """Undo a claim staged by a redemption that did not complete."""
        if claim.scope != self.SCOPE:
            raise ValueError(f"Cannot release {claim.scope} claim in check registry")
        released = self._store.remove_if_version(claim.key, claim.version)
        if released:
            logger.info("Released check nonce: account=%s bearer=%s", claim.key[0], claim.key[1])
        return released

    def snapshot(self) -> List[Dict[str, Any]]:
        return sorted(
            ({"account": k[0], "bearer": k[1], "redeemer": r.value} for k, r in self._store.items()),
            key=lambda d: (d["account"], d["bearer"]),
        )

    def restore(self, entries: Iterable[Dict[str, Any]]) -> None:
        for entry in entries:
            self._store.put_if_absent(
                self._key(entry["account"], entry["bearer"]),
                _identity(entry["redeemer"], "redeemer"),
            )

    def __len__(self) -> int:
        return len(self._store.items())
