"""
CHECKBOOK Ledger Snapshots

A snapshot is a YAML (or JSON) document with everything a redemption
touches outside the request itself:

    custodian_id: 0x...
    assets:
      0x<asset>: {kind: fungible, balances: {0x<account>: 100}}
      0x<asset>: {kind: unique, owners: {"7": 0x<account>}}
    check_nonces: [{account, bearer, redeemer}, ...]
    card_nonces:  [{card, digest_hash}, ...]

load_snapshot() turns it into a Sandbox of live ledgers, registries and a
RedemptionEngine; dump_snapshot() writes the sandbox back, as JSON for a
.json path and as YAML otherwise.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from checkbook.config import CheckbookConfig
from checkbook.core import dump_json, dump_yaml, load_json, load_yaml
from checkbook.custodian import (
    AssetKind,
    CustodianRegistry,
    FungibleLedger,
    UniqueAssetLedger,
)
from checkbook.engine import RedemptionEngine
from checkbook.nonces import CardNonceRegistry, CheckNonceRegistry
from checkbook.observability import Component, get_logger
from checkbook.schema import LEDGER_SNAPSHOT, require_valid

logger = get_logger("snapshot", Component.SNAPSHOT)


@dataclass
class Sandbox:
    """Live state rebuilt from a snapshot."""
    custodian_id: str
    custodians: CustodianRegistry
    card_nonces: CardNonceRegistry
    check_nonces: CheckNonceRegistry
    engine: RedemptionEngine

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config: Optional[CheckbookConfig] = None) -> 'Sandbox':
        require_valid(data, LEDGER_SNAPSHOT)

        custodians = CustodianRegistry()
        for asset_contract_id, entry in data["assets"].items():
            if entry["kind"] == AssetKind.FUNGIBLE.value:
                custodians.register(FungibleLedger(asset_contract_id, entry.get("balances", {})))
            else:
                custodians.register(UniqueAssetLedger(asset_contract_id, entry.get("owners", {})))

        card_nonces = CardNonceRegistry()
        card_nonces.restore(data.get("card_nonces", []))
        check_nonces = CheckNonceRegistry()
        check_nonces.restore(data.get("check_nonces", []))

        engine = RedemptionEngine(
            custodians,
            card_nonces=card_nonces,
            check_nonces=check_nonces,
            custodian_id=data["custodian_id"],
            config=config,
        )
        return cls(
            custodian_id=engine.custodian_id,
            custodians=custodians,
            card_nonces=card_nonces,
            check_nonces=check_nonces,
            engine=engine,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "custodian_id": self.custodian_id,
            "assets": {
                asset: self.custodians.get(asset).snapshot()
                for asset in self.custodians.assets()
            },
            "check_nonces": self.check_nonces.snapshot(),
            "card_nonces": self.card_nonces.snapshot(),
        }


def load_snapshot(path: Union[str, Path], config: Optional[CheckbookConfig] = None) -> Sandbox:
    """Load a ledger snapshot from YAML or JSON."""
    path = Path(path)
    data = load_json(path) if path.suffix == ".json" else load_yaml(path)
    sandbox = Sandbox.from_dict(data or {}, config=config)
    logger.debug(
        "Loaded ledger snapshot",
        path=str(path),
        assets=len(sandbox.custodians.assets()),
        check_nonces=len(sandbox.check_nonces),
    )
    return sandbox


def dump_snapshot(sandbox: Sandbox, path: Union[str, Path]) -> None:
    """Write a sandbox back in the format load_snapshot() reads for that path."""
    path = Path(path)
    if path.suffix == ".json":
        dump_json(path, sandbox.to_dict())
    else:
        dump_yaml(path, sandbox.to_dict())
    logger.debug("Wrote ledger snapshot", path=str(path))
