"""
CHECKBOOK Threshold Validation

m-of-n signature counting over two signer groups: primary signers, who
authorize the blank check, and card signers, who contribute a second factor
over per-redemption digests.

Only the first `required_*` entries of each group must sign, in order. The
remaining declared signers still shape the derived account but never sign.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple, Union

from checkbook.hardening import (
    CryptoUtils,
    DuplicateSigner,
    InvalidSignature,
    SignatureMismatch,
    SignerScope,
    ValidationError,
    ValidationErrors,
    ValidationResult,
    Validators,
)
from checkbook.signatures import (
    Signature,
    SignatureVerifier,
    card_digest_bytes,
    recipient_digest,
)

logger = logging.getLogger(__name__)

SignatureLike = Union[Signature, bytes, str]


# =============================================================================
# THRESHOLD CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class ThresholdConfig:
    """Signature requirements: (required_primary, total_primary, required_card, total_card)."""
    required_primary: int
    total_primary: int
    required_card: int = 0
    total_card: int = 0

    def __post_init__(self) -> None:
        self.validate().raise_if_invalid()

    def validate(self) -> ValidationResult:
        errors = []
        for name in ("required_primary", "total_primary", "required_card", "total_card"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(ValidationError(name, "Must be an integer", value))
            elif value < 0:
                errors.append(ValidationError(name, "Must not be negative", value))
        if errors:
            return ValidationResult.failure(errors)

        if self.required_primary < 1:
            errors.append(ValidationError(
                "required_primary", "At least one primary signature is required", self.required_primary,
            ))
        if self.required_primary > self.total_primary:
            errors.append(ValidationError(
                "required_primary", "Exceeds total_primary", self.required_primary,
            ))
        if self.required_card > self.total_card:
            errors.append(ValidationError(
                "required_card", "Exceeds total_card", self.required_card,
            ))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(self)

    @classmethod
    def from_sequence(cls, values: Sequence[Any]) -> 'ThresholdConfig':
        """Parse the four-element list form [m0, m1, m2, m3]."""
        if isinstance(values, str):
            values = [v for v in values.replace(" ", "").split(",") if v]
        if len(values) != 4:
            raise ValidationErrors([
                ValidationError("threshold", f"Expected 4 entries, got {len(values)}", values)
            ])
        parsed = [int(v) if isinstance(v, str) and v.isdigit() else v for v in values]
        return cls(*parsed)

    def to_list(self) -> List[int]:
        return [self.required_primary, self.total_primary, self.required_card, self.total_card]

    @property
    def total_signers(self) -> int:
        return self.total_primary + self.total_card

    @property
    def uses_cards(self) -> bool:
        return self.required_card > 0

    @property
    def signature_count(self) -> int:
        """Signatures a request carries: recipient, required primaries, required cards."""
        return 1 + self.required_primary + self.required_card


# =============================================================================
# SIGNER SET
# =============================================================================

@dataclass(frozen=True)
class SignerSet:
    """Declared signers split into their two groups."""
    primary_signers: Tuple[str, ...]
    card_signers: Tuple[str, ...] = ()

    @classmethod
    def from_list(cls, signers: Sequence[str], threshold: ThresholdConfig) -> 'SignerSet':
        """Split a positional signer list; the first total_primary entries are primaries."""
        if len(signers) != threshold.total_signers:
            raise ValidationErrors([ValidationError(
                "signers",
                f"Expected {threshold.total_signers} signers, got {len(signers)}",
                list(signers),
            )])

        normalized = []
        errors = []
        for index, signer in enumerate(signers):
            result = Validators.validate_address(signer, f"signers[{index}]")
            if result.is_valid:
                normalized.append(result.sanitized_value)
            else:
                errors.extend(result.errors)
        if errors:
            raise ValidationErrors(errors)

        return cls(
            primary_signers=tuple(normalized[:threshold.total_primary]),
            card_signers=tuple(normalized[threshold.total_primary:]),
        )

    def combined(self) -> List[str]:
        return list(self.primary_signers) + list(self.card_signers)

    def required_primaries(self, threshold: ThresholdConfig) -> Tuple[str, ...]:
        return self.primary_signers[:threshold.required_primary]

    def required_cards(self, threshold: ThresholdConfig) -> Tuple[str, ...]:
        return self.card_signers[:threshold.required_card]


# =============================================================================
# VALIDATOR
# =============================================================================

class ThresholdValidator:
    """
    Verifies that the declared signers actually signed.

    Every method raises a RedemptionRejected subclass on failure and returns
    normally on success. An unrecoverable signature is reported as a
    mismatch of the scope it was presented for.
    """

    def __init__(self, verifier: SignatureVerifier):
        self.verifier = verifier

    def _matches(self, digest: bytes, signature: SignatureLike, expected: str, scope: SignerScope, index: int) -> None:
        try:
            recovered = self.verifier.recover(digest, signature)
        except InvalidSignature as exc:
            logger.debug("Unrecoverable %s signature at index %d: %s", scope.value, index, exc)
            raise SignatureMismatch(scope, index) from exc
        if not CryptoUtils.same_identity(recovered, expected):
            raise SignatureMismatch(scope, index)

    def verify_signers(
        self,
        message_digest: bytes,
        signer_set: SignerSet,
        threshold: ThresholdConfig,
        signatures: Sequence[SignatureLike],
    ) -> None:
        """Each of the first required_primary signatures must recover to its primary signer."""
        required = signer_set.required_primaries(threshold)
        if len(signatures) < len(required):
            raise SignatureMismatch(SignerScope.SIGNER, len(signatures))
        for index, expected in enumerate(required):
            self._matches(message_digest, signatures[index], expected, SignerScope.SIGNER, index)

    def verify_card_signers(
        self,
        digest_hashes: Sequence[str],
        signer_set: SignerSet,
        threshold: ThresholdConfig,
        signatures: Sequence[SignatureLike],
    ) -> None:
        """Each required card must have signed its own digest hash."""
        required = signer_set.required_cards(threshold)
        if len(signatures) < len(required) or len(digest_hashes) < len(required):
            raise SignatureMismatch(SignerScope.CARD, min(len(signatures), len(digest_hashes)))
        for index, expected in enumerate(required):
            try:
                digest = card_digest_bytes(digest_hashes[index])
            except InvalidSignature as exc:
                raise SignatureMismatch(SignerScope.CARD, index) from exc
            self._matches(digest, signatures[index], expected, SignerScope.CARD, index)

    @staticmethod
    def reject_duplicates(signers: Sequence[str]) -> None:
        """No identity may appear twice across both signer groups."""
        seen = set()
        for signer in signers:
            key = signer.lower()
            if key in seen:
                raise DuplicateSigner()
            seen.add(key)

    def verify_recipient_claim(
        self,
        recipient: str,
        bearer_secret_identity: str,
        signature: SignatureLike,
    ) -> None:
        """The bearer secret must have signed the recipient identity."""
        self._matches(
            recipient_digest(recipient),
            signature,
            bearer_secret_identity,
            SignerScope.RECIPIENT,
            0,
        )
