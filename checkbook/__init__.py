"""
CHECKBOOK — Blank-Check Redemption Authorization

A payer pre-authorizes a transfer out of a virtual, address-less account by
handing out a signed blank check. Whoever holds the bearer secret can later
name a recipient and redeem it, optionally backed by second-factor card
signatures. Every check redeems at most once; every card digest is single
use across all engines sharing a registry.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        REDEMPTION AUTHORIZATION                          │
    │                                                                          │
    │  ORCHESTRATION                                                          │
    │    engine.py       Ordered state machine with unit-of-work rollback     │
    │    snapshot.py     Ledger snapshots for the CLI sandbox                 │
    │    cli.py          checkbook command line                               │
    │                                                                          │
    │  AUTHORIZATION                                                          │
    │    signatures.py   secp256k1 recovery, message digests                  │
    │    threshold.py    m-of-n primary and card signer verification          │
    │    derivation.py   Virtual account identity as a pure hash              │
    │    nonces.py       Check and card replay protection                     │
    │                                                                          │
    │  BOUNDARY                                                               │
    │    custodian.py    Fungible and unique asset ledgers                    │
    │                                                                          │
    │  AMBIENT                                                                │
    │    hardening.py    Validation, rejection taxonomy, invariants           │
    │    config.py       YAML + environment configuration                     │
    │    observability.py Structured logging and hash-chained audit trail     │
    │    schema.py       JSON Schema validation of documents                  │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Virtual Account: Identity derived from the signer set, threshold, asset
    and custodian. Nobody holds its key; value leaves it only through a
    redemption.

    Blank Check: Primary signatures over (asset, face value, bearer secret
    identity). The recipient is not part of it; the bearer secret names the
    recipient at redemption time.

    Card: A second-factor signer that signs a fresh 32-byte digest for each
    redemption. A digest a card has signed once is never accepted again.

Design Principles
─────────────────

    Fail Closed: Every failure rejects the whole redemption with a reason tag.

    Atomic Redemptions: Nonce claims staged by a redemption that does not
    complete are released before the rejection reaches the caller.

Copyright © 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import CHECKBOOK modules on first access."""

    # Signature exports
    if name in ("Signature", "SignatureVerifier", "blank_check_digest",
                "recipient_digest", "sign_digest", "identity_of"):
        from checkbook import signatures
        return getattr(signatures, name)

    # Threshold exports
    if name in ("ThresholdConfig", "SignerSet", "ThresholdValidator"):
        from checkbook import threshold
        return getattr(threshold, name)

    # Derivation exports
    if name in ("derive_account",):
        from checkbook import derivation
        return getattr(derivation, name)

    # Nonce exports
    if name in ("CardNonceRegistry", "CheckNonceRegistry", "NonceClaim",
                "NonceStore", "InMemoryNonceStore"):
        from checkbook import nonces
        return getattr(nonces, name)

    # Custodian exports
    if name in ("AssetCustodian", "AssetKind", "FungibleLedger", "UniqueAssetLedger",
                "CustodianRegistry", "CustodianError", "InsufficientFunds",
                "NotOwner", "UnknownAsset", "TransferEvent"):
        from checkbook import custodian
        return getattr(custodian, name)

    # Engine exports
    if name in ("RedemptionEngine", "RedemptionRequest", "RedemptionReceipt",
                "RedemptionOutcome", "RedemptionState", "UnitOfWork"):
        from checkbook import engine
        return getattr(engine, name)

    # Hardening exports
    if name in ("ValidationError", "ValidationErrors", "SecurityViolation",
                "InvariantViolation", "InvalidSignature", "RedemptionRejected",
                "RejectionReason", "SignerScope", "MalformedRequest",
                "SignatureMismatch", "DuplicateSigner", "NonceReused",
                "CardNonceReused", "CheckNonceReused", "CustodianFailure"):
        from checkbook import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'checkbook' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Signatures
    "Signature",
    "SignatureVerifier",
    "blank_check_digest",
    "recipient_digest",
    # Threshold
    "ThresholdConfig",
    "SignerSet",
    "ThresholdValidator",
    # Derivation
    "derive_account",
    # Nonces
    "CardNonceRegistry",
    "CheckNonceRegistry",
    # Custodian
    "FungibleLedger",
    "UniqueAssetLedger",
    "CustodianRegistry",
    # Engine
    "RedemptionEngine",
    "RedemptionRequest",
    "RedemptionReceipt",
    # Rejections
    "RedemptionRejected",
    "RejectionReason",
]
