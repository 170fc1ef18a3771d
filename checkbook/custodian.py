"""
CHECKBOOK Asset Custodian

The external ledger that actually holds value. The redemption engine only
ever asks it to move a face value from a virtual account to a recipient;
how balances and ownership are tracked is the custodian's business.

Two in-memory reference ledgers are provided:

    FungibleLedger      balances in integer base units
    UniqueAssetLedger   one owner per asset identifier

A CustodianRegistry maps asset contract identifiers to the ledger that
holds them.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from checkbook.core import normalize_identity
from checkbook.hardening import ValidationErrors, Validators


class AssetKind(Enum):
    """How a face value is interpreted."""
    FUNGIBLE = "fungible"
    UNIQUE = "unique"


# =============================================================================
# ERRORS
# =============================================================================

class CustodianError(Exception):
    """The custodian refused a value movement."""
    pass


class InsufficientFunds(CustodianError):
    pass


class NotOwner(CustodianError):
    pass


class UnknownAsset(CustodianError):
    pass


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class TransferEvent:
    """Record of one completed movement."""
    asset_contract_id: str
    sender: str
    recipient: str
    value: Union[int, str]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _require_identity(value: str, field_name: str) -> str:
    result = Validators.validate_address(value, field_name)
    if not result.is_valid:
        raise ValidationErrors(result.errors)
    return result.sanitized_value


# =============================================================================
# CUSTODIAN INTERFACE
# =============================================================================

class AssetCustodian(ABC):
    """A ledger for one asset contract."""

    kind: AssetKind

    def __init__(self, asset_contract_id: str):
        self.asset_contract_id = _require_identity(asset_contract_id, "asset_contract_id")
        self._lock = threading.RLock()
        self._events: List[TransferEvent] = []

    @abstractmethod
    def _apply(self, sender: str, recipient: str, face_value: Union[int, str]) -> None:
        """Perform the movement or raise CustodianError. Called under the lock."""

    def move(self, sender: str, recipient: str, face_value: Union[int, str]) -> TransferEvent:
        """Move face_value from sender to recipient; all or nothing."""
        sender = _require_identity(sender, "sender")
        recipient = _require_identity(recipient, "recipient")
        with self._lock:
            self._apply(sender, recipient, face_value)
            event = TransferEvent(
                asset_contract_id=self.asset_contract_id,
                sender=sender,
                recipient=recipient,
                value=face_value,
            )
            self._events.append(event)
            return event

    @property
    def events(self) -> List[TransferEvent]:
        with self._lock:
            return list(self._events)

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Serializable state of the ledger."""


class FungibleLedger(AssetCustodian):
    """Balances in integer base units."""

    kind = AssetKind.FUNGIBLE

    def __init__(self, asset_contract_id: str, balances: Optional[Dict[str, int]] = None):
        super().__init__(asset_contract_id)
        self._balances: Dict[str, int] = {}
        for account, amount in (balances or {}).items():
            self.mint(account, amount)

    @staticmethod
    def _amount(value: Any) -> int:
        result = Validators.validate_amount(value, "amount")
        if not result.is_valid:
            raise ValidationErrors(result.errors)
        return result.sanitized_value

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(normalize_identity(account), 0)

    def mint(self, to: str, amount: int) -> None:
        to = _require_identity(to, "to")
        amount = self._amount(amount)
        with self._lock:
            self._balances[to] = self._balances.get(to, 0) + amount

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferEvent:
        return self.move(sender, recipient, amount)

    def _apply(self, sender: str, recipient: str, face_value: Union[int, str]) -> None:
        # A string face value names a unique asset, never an amount
        if not isinstance(face_value, int) or isinstance(face_value, bool):
            raise CustodianError(
                f"Face value for {self.asset_contract_id} must be an integer amount, got {face_value!r}"
            )
        try:
            amount = self._amount(face_value)
        except ValidationErrors as exc:
            raise CustodianError(f"Invalid amount for {self.asset_contract_id}: {face_value!r}") from exc
        available = self._balances.get(sender, 0)
        if available < amount:
            raise InsufficientFunds(
                f"{sender} holds {available} of {self.asset_contract_id}, needs {amount}"
            )
        self._balances[sender] = available - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "kind": self.kind.value,
                "balances": {k: v for k, v in sorted(self._balances.items()) if v},
            }


class UniqueAssetLedger(AssetCustodian):
    """One owner per asset identifier."""

    kind = AssetKind.UNIQUE

    def __init__(self, asset_contract_id: str, owners: Optional[Dict[str, str]] = None):
        super().__init__(asset_contract_id)
        self._owners: Dict[str, str] = {}
        for asset_id, owner in (owners or {}).items():
            self.mint(owner, asset_id)

    @staticmethod
    def _asset_id(value: Any) -> str:
        result = Validators.validate_asset_id(value, "asset_id")
        if not result.is_valid:
            raise ValidationErrors(result.errors)
        return result.sanitized_value

    def owner_of(self, asset_id: Union[int, str]) -> Optional[str]:
        with self._lock:
            return self._owners.get(self._asset_id(asset_id))

    def mint(self, to: str, asset_id: Union[int, str]) -> None:
        to = _require_identity(to, "to")
        asset_id = self._asset_id(asset_id)
        with self._lock:
            if asset_id in self._owners:
                raise CustodianError(f"Asset {asset_id} already exists")
            self._owners[asset_id] = to

    def transfer_from(self, sender: str, recipient: str, asset_id: Union[int, str]) -> TransferEvent:
        return self.move(sender, recipient, str(asset_id))

    def _apply(self, sender: str, recipient: str, face_value: Union[int, str]) -> None:
        if not isinstance(face_value, str):
            raise CustodianError(
                f"Face value for {self.asset_contract_id} must be an asset id string, got {face_value!r}"
            )
        try:
            asset_id = self._asset_id(face_value)
        except ValidationErrors as exc:
            raise CustodianError(f"Invalid asset id for {self.asset_contract_id}: {face_value!r}") from exc
        owner = self._owners.get(asset_id)
        if owner != sender:
            raise NotOwner(f"{sender} does not own {self.asset_contract_id}/{asset_id}")
        self._owners[asset_id] = recipient

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "kind": self.kind.value,
                "owners": dict(sorted(self._owners.items())),
            }


# =============================================================================
# REGISTRY
# =============================================================================

class CustodianRegistry:
    """Maps asset contract identifiers to their ledgers."""

    def __init__(self):
        self._ledgers: Dict[str, AssetCustodian] = {}
        self._lock = threading.Lock()

    def register(self, ledger: AssetCustodian) -> AssetCustodian:
        with self._lock:
            self._ledgers[ledger.asset_contract_id] = ledger
        return ledger

    def get(self, asset_contract_id: str) -> AssetCustodian:
        key = normalize_identity(asset_contract_id)
        with self._lock:
            ledger = self._ledgers.get(key)
        if ledger is None:
            raise UnknownAsset(f"No custodian registered for {key}")
        return ledger

    def move(self, asset_contract_id: str, sender: str, recipient: str, face_value: Union[int, str]) -> TransferEvent:
        return self.get(asset_contract_id).move(sender, recipient, face_value)

    def assets(self) -> List[str]:
        with self._lock:
            return sorted(self._ledgers)

    def __contains__(self, asset_contract_id: str) -> bool:
        with self._lock:
            return normalize_identity(asset_contract_id) in self._ledgers
