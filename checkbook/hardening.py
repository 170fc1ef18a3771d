"""
CHECKBOOK Validation and Hardening Module

Validation, error taxonomy and security primitives shared by every
CHECKBOOK component. It addresses:

1. Input validation with sanitization (identities, digests, amounts)
2. The redemption rejection taxonomy and its reason tags
3. Constant-time identity comparison
4. Thread-safe counters
5. State machine invariant enforcement

Security Model:
    - All inputs are untrusted until validated
    - Recovered identities are compared in constant time
    - All state mutations are atomic or compensated

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class SecurityViolation(Exception):
    """Security constraint violated."""
    pass


class InvariantViolation(Exception):
    """State machine invariant violated."""
    pass


class InvalidSignature(SecurityViolation):
    """A signature could not be decoded or no signer could be recovered from it."""
    pass


# =============================================================================
# REDEMPTION REJECTIONS
# =============================================================================

class RejectionReason(Enum):
    """Reason tags reported to callers of a rejected redemption."""
    MALFORMED_REQUEST = "malformed_request"
    SIGNATURE_MISMATCH = "signature_mismatch"
    DUPLICATE_SIGNER = "duplicate_signer"
    CARD_NONCE_REUSED = "card_nonce_reused"
    CHECK_NONCE_REUSED = "check_nonce_reused"
    CUSTODIAN_FAILURE = "custodian_failure"


class SignerScope(Enum):
    """Which party's signature failed to match."""
    SIGNER = "signer"
    CARD = "card"
    RECIPIENT = "recipient"


class RedemptionRejected(SecurityViolation):
    """
    A redemption was refused.

    Every subclass pins a reason tag; the message is the caller-facing
    explanation and is stable across releases.
    """

    reason: RejectionReason = RejectionReason.MALFORMED_REQUEST
    default_message = "Redemption rejected"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason.value, "message": self.message}


class MalformedRequest(RedemptionRejected):
    """Request shape does not match its threshold configuration."""
    reason = RejectionReason.MALFORMED_REQUEST
    default_message = "Malformed redemption request"


class SignatureMismatch(RedemptionRejected):
    """A recovered identity differs from the declared one."""
    reason = RejectionReason.SIGNATURE_MISMATCH

    MESSAGES = {
        SignerScope.SIGNER: "Invalid address found when verifying signer signatures",
        SignerScope.CARD: "Invalid address found when verifying card signatures",
        SignerScope.RECIPIENT: "Invalid nonce",
    }

    def __init__(self, scope: SignerScope, index: Optional[int] = None):
        self.scope = scope
        self.index = index
        super().__init__(self.MESSAGES[scope])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["scope"] = self.scope.value
        if self.index is not None:
            data["index"] = self.index
        return data


class DuplicateSigner(RedemptionRejected):
    """The combined signer list names the same identity twice."""
    reason = RejectionReason.DUPLICATE_SIGNER
    default_message = "Card address has been used already"


class NonceReused(RedemptionRejected):
    """A single-use marker has already been consumed."""
    pass


class CardNonceReused(NonceReused):
    reason = RejectionReason.CARD_NONCE_REUSED
    default_message = "Card nonce already used"


class CheckNonceReused(NonceReused):
    reason = RejectionReason.CHECK_NONCE_REUSED
    default_message = "Nonce already used"


class CustodianFailure(RedemptionRejected):
    """The custodian refused the value movement; its own error is the __cause__."""
    reason = RejectionReason.CUSTODIAN_FAILURE
    default_message = "Custodian transfer failed"


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')
    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    ASSET_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]{1,128}$')

    # Limits
    MAX_STRING_LENGTH = 4096
    MAX_AMOUNT = 2 ** 256 - 1

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))
            sanitized = sanitized[:max_length]

        if pattern and not pattern.match(sanitized):
            errors.append(ValidationError(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate an identity (0x + 40 hex), normalising to lowercase."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be a valid identity (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars, optional 0x prefix)."""
        if isinstance(value, bytes):
            value = value.hex()
        if isinstance(value, str) and value[:2].lower() == "0x":
            value = value[2:]
        result = cls.validate_string(value, field_name, min_length=64, max_length=64)
        if not result.is_valid:
            return result

        if not cls.HEX64_PATTERN.match(result.sanitized_value.lower()):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 lowercase hex characters", value)
            ])

        return ValidationResult.success(result.sanitized_value.lower())

    @classmethod
    def validate_amount(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        """Validate a fungible amount expressed in integer base units."""
        if isinstance(value, bool):
            return ValidationResult.failure([
                ValidationError(field_name, "Expected integer base units, got bool", value)
            ])
        if isinstance(value, str) and re.fullmatch(r"\d+", value.strip()):
            value = int(value.strip())
        if not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer base units, got {type(value).__name__}", value)
            ])
        if value < 0:
            return ValidationResult.failure([ValidationError(field_name, "Must not be negative", value)])
        if value > cls.MAX_AMOUNT:
            return ValidationResult.failure([ValidationError(field_name, "Exceeds 256-bit range", value)])
        return ValidationResult.success(value)

    @classmethod
    def validate_asset_id(cls, value: Any, field_name: str = "asset_id") -> ValidationResult:
        """Validate a unique asset identifier (token id)."""
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        return cls.validate_string(
            value, field_name,
            min_length=1, max_length=128,
            pattern=cls.ASSET_ID_PATTERN,
        )

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 65536,
    ) -> ValidationResult:
        """Validate bytes, accepting hex strings with or without 0x."""
        errors = []

        if isinstance(value, str):
            text = value.strip()
            if text[:2].lower() == "0x":
                text = text[2:]
            try:
                value = bytes.fromhex(text)
            except ValueError:
                errors.append(ValidationError(field_name, "Invalid hex string", value))
                return ValidationResult.failure(errors)

        if not isinstance(value, bytes):
            errors.append(ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", value))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def same_identity(a: str, b: str) -> bool:
        """Constant-time identity equality, ignoring hex case."""
        return hmac.compare_digest(a.lower().encode(), b.lower().encode())


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )
