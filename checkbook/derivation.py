"""
CHECKBOOK Address Derivation

The virtual account a blank check draws on has no key of its own. Its
identity is a pure function of who may sign for it and under which
threshold, for which asset, at which custodian:

    account = "0x" + sha256(canonical_json([
        "checkbook.account.v1",
        [signer, ...],                 # primaries then cards, declared order
        [m0, m1, m2, m3],              # threshold list form
        asset_contract_id,
        custodian_id,
    ]))[-40:]

Any change to any input, including signer order, yields a different
account.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from checkbook.core import canonical_json_bytes, sha256_bytes
from checkbook.hardening import Validators
from checkbook.threshold import SignerSet, ThresholdConfig

ACCOUNT_DOMAIN = "checkbook.account.v1"


def _identity(value: str, field_name: str) -> str:
    result = Validators.validate_address(value, field_name)
    result.raise_if_invalid()
    return result.sanitized_value


def account_preimage(
    signer_set: SignerSet,
    threshold: ThresholdConfig,
    asset_contract_id: str,
    custodian_id: str,
) -> bytes:
    """Canonical bytes hashed into the account identity.

    Raises ValidationErrors if the asset or custodian is not an identity.
    """
    return canonical_json_bytes([
        ACCOUNT_DOMAIN,
        signer_set.combined(),
        threshold.to_list(),
        _identity(asset_contract_id, "asset_contract_id"),
        _identity(custodian_id, "custodian_id"),
    ])


def derive_account(
    signer_set: SignerSet,
    threshold: ThresholdConfig,
    asset_contract_id: str,
    custodian_id: str,
) -> str:
    """Derive the virtual account identity."""
    digest = sha256_bytes(account_preimage(signer_set, threshold, asset_contract_id, custodian_id))
    return "0x" + digest[-40:]
