"""
CHECKBOOK Signature Verification

secp256k1 public-key recovery over SHA-256 message digests. A signer never
publishes its public key; the verifier recovers it from the signature and
compares the derived identity with the one that was declared.

Wire format:
    65 bytes, r (32) || s (32) || v (1), hex encoded with optional 0x.
    v is 27 for an even ephemeral y coordinate, 28 for an odd one.

Message digests:
    blank_check_digest  binds asset, face value and bearer identity
    recipient_digest    binds the recipient identity only
    card assertions     sign their 32-byte digest hash as-is

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Union

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.ecdsa import InvalidPointError
from ecdsa.keys import MalformedPointError
from ecdsa.numbertheory import Error as NumberTheoryError
from ecdsa.util import sigdecode_string, sigencode_string_canonize

from checkbook.core import canonical_json_bytes, sha256_digest
from checkbook.hardening import InvalidSignature, Validators


CURVE_ORDER = SECP256k1.order
HALF_CURVE_ORDER = CURVE_ORDER // 2

SIGNATURE_LENGTH = 65
RECOVERY_IDS = (27, 28)

BLANK_CHECK_DOMAIN = "checkbook.blank-check.v1"
RECIPIENT_DOMAIN = "checkbook.recipient.v1"


# =============================================================================
# SIGNATURE ENCODING
# =============================================================================

@dataclass(frozen=True)
class Signature:
    """A recoverable secp256k1 signature."""
    v: int
    r: int
    s: int

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Signature':
        if len(data) != SIGNATURE_LENGTH:
            raise InvalidSignature(
                f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(data)}"
            )
        return cls(
            v=data[64],
            r=int.from_bytes(data[:32], "big"),
            s=int.from_bytes(data[32:64], "big"),
        )

    @classmethod
    def from_hex(cls, value: str) -> 'Signature':
        result = Validators.validate_bytes(
            value, "signature",
            min_length=SIGNATURE_LENGTH, max_length=SIGNATURE_LENGTH,
        )
        if not result.is_valid:
            raise InvalidSignature(result.errors[0].message)
        return cls.from_bytes(result.sanitized_value)

    @classmethod
    def coerce(cls, value: Union['Signature', bytes, str]) -> 'Signature':
        """Accept a Signature, its raw bytes or its hex form."""
        if isinstance(value, Signature):
            return value
        if isinstance(value, (bytes, bytearray)):
            return cls.from_bytes(bytes(value))
        if isinstance(value, str):
            return cls.from_hex(value)
        raise InvalidSignature(f"Unsupported signature type: {type(value).__name__}")

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()

    @property
    def is_low_s(self) -> bool:
        return self.s <= HALF_CURVE_ORDER


# =============================================================================
# MESSAGE DIGESTS
# =============================================================================

def _normalize_face_value(face_value: Any) -> Any:
    if isinstance(face_value, bool) or not isinstance(face_value, (int, str)):
        raise TypeError(f"face_value must be int or str, got {type(face_value).__name__}")
    return face_value


def blank_check_digest(asset_contract_id: str, face_value: Union[int, str], bearer_secret_identity: str) -> bytes:
    """Digest the primary signers authorize. The recipient is deliberately absent."""
    payload = {
        "domain": BLANK_CHECK_DOMAIN,
        "asset": asset_contract_id.lower(),
        "face_value": _normalize_face_value(face_value),
        "bearer": bearer_secret_identity.lower(),
    }
    return sha256_digest(canonical_json_bytes(payload))


def recipient_digest(recipient: str) -> bytes:
    """Digest the bearer secret signs to name who receives the value."""
    payload = {
        "domain": RECIPIENT_DOMAIN,
        "recipient": recipient.lower(),
    }
    return sha256_digest(canonical_json_bytes(payload))


def card_digest_bytes(digest_hash: str) -> bytes:
    """Raw bytes a card signs for its 64-hex digest hash."""
    result = Validators.validate_digest(digest_hash, "digest_hash")
    if not result.is_valid:
        raise InvalidSignature(result.errors[0].message)
    return bytes.fromhex(result.sanitized_value)


# =============================================================================
# IDENTITIES
# =============================================================================

def identity_of(key: Union[SigningKey, VerifyingKey]) -> str:
    """Identity of a key: last 20 bytes of sha256 over the raw x || y point."""
    if isinstance(key, SigningKey):
        key = key.get_verifying_key()
    return "0x" + hashlib.sha256(key.to_string()).digest()[-20:].hex()


def sign_digest(key: SigningKey, digest: bytes) -> Signature:
    """Produce a low-s recoverable signature over a 32-byte digest."""
    raw = key.sign_digest_deterministic(
        digest,
        hashfunc=hashlib.sha256,
        sigencode=sigencode_string_canonize,
    )
    expected = key.get_verifying_key().to_string()
    candidates = VerifyingKey.from_public_key_recovery_with_digest(
        raw, digest, curve=SECP256k1,
        hashfunc=hashlib.sha256, sigdecode=sigdecode_string,
    )
    for index, candidate in enumerate(candidates):
        if candidate.to_string() == expected:
            return Signature(
                v=RECOVERY_IDS[index],
                r=int.from_bytes(raw[:32], "big"),
                s=int.from_bytes(raw[32:], "big"),
            )
    raise InvalidSignature("Signing key could not be recovered from its own signature")


# =============================================================================
# VERIFIER
# =============================================================================

class SignatureVerifier:
    """
    Recovers signer identities from signatures.

    Pure and stateless; safe to share between threads and engines.
    """

    def __init__(self, require_low_s: bool = True):
        self.require_low_s = require_low_s

    def check_encoding(self, signature: Signature) -> None:
        """Reject encodings that can never recover a key."""
        if signature.v not in RECOVERY_IDS:
            raise InvalidSignature(f"Recovery id must be 27 or 28, got {signature.v}")
        if not 1 <= signature.r < CURVE_ORDER:
            raise InvalidSignature("Signature r out of range")
        if not 1 <= signature.s < CURVE_ORDER:
            raise InvalidSignature("Signature s out of range")
        if self.require_low_s and not signature.is_low_s:
            raise InvalidSignature("Signature s is not in the lower half of the curve order")

    def recover_key(self, message_digest: bytes, signature: Union[Signature, bytes, str]) -> VerifyingKey:
        sig = Signature.coerce(signature)
        self.check_encoding(sig)
        if len(message_digest) != 32:
            raise InvalidSignature(f"Message digest must be 32 bytes, got {len(message_digest)}")

        raw = sig.r.to_bytes(32, "big") + sig.s.to_bytes(32, "big")
        try:
            candidates = VerifyingKey.from_public_key_recovery_with_digest(
                raw, message_digest, curve=SECP256k1,
                hashfunc=hashlib.sha256, sigdecode=sigdecode_string,
            )
        except (NumberTheoryError, InvalidPointError, MalformedPointError, ValueError, TypeError) as exc:
            raise InvalidSignature(f"No public key recoverable from signature: {exc}") from exc

        return candidates[RECOVERY_IDS.index(sig.v)]

    def recover(self, message_digest: bytes, signature: Union[Signature, bytes, str]) -> str:
        """Recover the signer identity for a digest and signature."""
        return identity_of(self.recover_key(message_digest, signature))
