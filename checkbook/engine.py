"""
CHECKBOOK Redemption Engine

Orchestrates one redemption of a blank check as an ordered state machine
wrapped in a unit of work:

    RECEIVED
       │  primary signatures over the blank-check digest
       ▼
    SIGNERS_VERIFIED
       │  duplicate signers rejected; if cards are required, every card
       │  signature verified, then every card digest claimed
       ▼
    CARDS_VERIFIED (optional)
       │  bearer secret signed the recipient
       ▼
    RECIPIENT_VERIFIED
       │  virtual account derived
       ▼
    ACCOUNT_DERIVED
       │  check nonce peeked, then claimed for the recipient
       ▼
    NONCE_CLAIMED ──── recipient is the account ────► CANCELLED
       │
       │  custodian moves the face value
       ▼
    SETTLED

Any failure moves the redemption to REJECTED and runs the compensations
staged so far, in reverse order, so no nonce claim outlives a redemption
that did not complete.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from checkbook.config import CheckbookConfig, get_config
from checkbook.custodian import CustodianError, CustodianRegistry, TransferEvent
from checkbook.derivation import derive_account
from checkbook.hardening import (
    CardNonceReused,
    CheckNonceReused,
    CryptoUtils,
    CustodianFailure,
    InvalidSignature,
    InvariantChecker,
    MalformedRequest,
    RedemptionRejected,
    ValidationError,
    ValidationErrors,
    Validators,
)
from checkbook.nonces import CardNonceRegistry, CheckNonceRegistry, NonceClaim
from checkbook.observability import (
    AuditLogger,
    Component,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)
from checkbook.schema import REDEMPTION_REQUEST, require_valid
from checkbook.signatures import Signature, SignatureVerifier, blank_check_digest
from checkbook.threshold import SignerSet, ThresholdConfig, ThresholdValidator

logger = get_logger("engine", Component.ENGINE)


# =============================================================================
# REDEMPTION STATES
# =============================================================================

class RedemptionState(Enum):
    """States of a single redemption."""
    RECEIVED = "received"
    SIGNERS_VERIFIED = "signers_verified"
    CARDS_VERIFIED = "cards_verified"
    RECIPIENT_VERIFIED = "recipient_verified"
    ACCOUNT_DERIVED = "account_derived"
    NONCE_CLAIMED = "nonce_claimed"

    # Terminal states
    SETTLED = "settled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    def is_terminal(self) -> bool:
        return self in {
            RedemptionState.SETTLED,
            RedemptionState.CANCELLED,
            RedemptionState.REJECTED,
        }


_FORWARD: Dict[RedemptionState, Set[RedemptionState]] = {
    RedemptionState.RECEIVED: {RedemptionState.SIGNERS_VERIFIED},
    RedemptionState.SIGNERS_VERIFIED: {
        RedemptionState.CARDS_VERIFIED,
        RedemptionState.RECIPIENT_VERIFIED,
    },
    RedemptionState.CARDS_VERIFIED: {RedemptionState.RECIPIENT_VERIFIED},
    RedemptionState.RECIPIENT_VERIFIED: {RedemptionState.ACCOUNT_DERIVED},
    RedemptionState.ACCOUNT_DERIVED: {RedemptionState.NONCE_CLAIMED},
    RedemptionState.NONCE_CLAIMED: {RedemptionState.SETTLED, RedemptionState.CANCELLED},
}

VALID_TRANSITIONS: Dict[RedemptionState, Set[RedemptionState]] = {
    state: (_FORWARD.get(state, set()) | {RedemptionState.REJECTED})
    for state in RedemptionState
    if not state.is_terminal()
}


class RedemptionOutcome(Enum):
    SETTLED = "settled"
    CANCELLED = "cancelled"


# =============================================================================
# REQUEST AND RECEIPT
# =============================================================================

FaceValue = Union[int, str]


def _validated(result: Any, errors: List[ValidationError]) -> Any:
    if not result.is_valid:
        errors.extend(result.errors)
    return result.sanitized_value


@dataclass
class RedemptionRequest:
    """
    Everything a recipient presents to redeem a blank check.

    signatures holds, in order: the bearer secret's recipient signature,
    one signature per required primary signer, one per required card.
    """
    asset_contract_id: str
    recipient: str
    bearer_secret_identity: str
    signers: Sequence[str]
    threshold: ThresholdConfig
    signatures: Sequence[Union[Signature, bytes, str]]
    face_value: FaceValue
    card_digests: Sequence[str] = ()

    def __post_init__(self) -> None:
        errors: List[ValidationError] = []

        self.asset_contract_id = _validated(
            Validators.validate_address(self.asset_contract_id, "asset_contract_id"), errors)
        self.recipient = _validated(
            Validators.validate_address(self.recipient, "recipient"), errors)
        self.bearer_secret_identity = _validated(
            Validators.validate_address(self.bearer_secret_identity, "bearer_secret_identity"), errors)

        self.signers = tuple(
            _validated(Validators.validate_address(s, f"signers[{i}]"), errors)
            for i, s in enumerate(self.signers)
        )
        self.card_digests = tuple(
            _validated(Validators.validate_digest(d, f"card_digests[{i}]"), errors)
            for i, d in enumerate(self.card_digests)
        )

        if isinstance(self.face_value, str):
            self.face_value = _validated(Validators.validate_asset_id(self.face_value, "face_value"), errors)
        else:
            self.face_value = _validated(Validators.validate_amount(self.face_value, "face_value"), errors)

        signatures = []
        for i, sig in enumerate(self.signatures):
            try:
                signatures.append(Signature.coerce(sig))
            except InvalidSignature as exc:
                errors.append(ValidationError(f"signatures[{i}]", str(exc), sig))
        self.signatures = tuple(signatures)

        if not isinstance(self.threshold, ThresholdConfig):
            errors.append(ValidationError("threshold", "Expected ThresholdConfig", self.threshold))

        if errors:
            raise ValidationErrors(errors)

    @property
    def recipient_signature(self) -> Signature:
        return self.signatures[0]

    @property
    def primary_signatures(self) -> Tuple[Signature, ...]:
        return tuple(self.signatures[1:1 + self.threshold.required_primary])

    @property
    def card_signatures(self) -> Tuple[Signature, ...]:
        return tuple(self.signatures[1 + self.threshold.required_primary:])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RedemptionRequest':
        """Build a request from its JSON document form."""
        require_valid(data, REDEMPTION_REQUEST)
        return cls(
            asset_contract_id=data["asset_contract_id"],
            recipient=data["recipient"],
            bearer_secret_identity=data["bearer_secret_identity"],
            signers=list(data["signers"]),
            threshold=ThresholdConfig.from_sequence(data["threshold"]),
            signatures=list(data["signatures"]),
            face_value=data["face_value"],
            card_digests=list(data.get("card_digests", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_contract_id": self.asset_contract_id,
            "recipient": self.recipient,
            "bearer_secret_identity": self.bearer_secret_identity,
            "signers": list(self.signers),
            "threshold": self.threshold.to_list(),
            "signatures": [s.to_hex() for s in self.signatures],
            "face_value": self.face_value,
            "card_digests": list(self.card_digests),
        }


@dataclass
class RedemptionReceipt:
    """Result of a redemption that was not rejected."""
    redemption_id: str
    outcome: RedemptionOutcome
    account: str
    recipient: str
    bearer_secret_identity: str
    asset_contract_id: str
    face_value: FaceValue
    transfer: Optional[TransferEvent]
    states: List[RedemptionState]
    correlation_id: str
    completed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def settled(self) -> bool:
        return self.outcome is RedemptionOutcome.SETTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "redemption_id": self.redemption_id,
            "outcome": self.outcome.value,
            "account": self.account,
            "recipient": self.recipient,
            "bearer_secret_identity": self.bearer_secret_identity,
            "asset_contract_id": self.asset_contract_id,
            "face_value": self.face_value,
            "transfer": self.transfer.to_dict() if self.transfer else None,
            "states": [s.value for s in self.states],
            "correlation_id": self.correlation_id,
            "completed_at": self.completed_at,
        }


# =============================================================================
# UNIT OF WORK
# =============================================================================

@dataclass
class CompensationRecord:
    """Record of one compensation that ran."""
    action: str
    timestamp: str
    success: bool
    details: Dict[str, Any]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "timestamp": self.timestamp,
            "success": self.success,
            "details": self.details,
            "error": self.error,
        }


class UnitOfWork:
    """
    Stages compensations for every mutation made during a redemption.

    Leaving the block with an exception, or calling rollback(), runs the
    staged compensations newest first. Each runs independently, so one
    failing compensation never prevents the rest from being attempted.
    commit() discards them.
    """

    def __init__(self):
        self._staged: List[Tuple[str, Callable[[], Any], Dict[str, Any]]] = []
        self._committed = False
        self.compensations: List[CompensationRecord] = []

    def stage(self, action: str, compensation: Callable[[], Any], **details: Any) -> None:
        if self._committed:
            raise RuntimeError("Unit of work already committed")
        self._staged.append((action, compensation, details))

    @property
    def pending(self) -> int:
        return len(self._staged)

    def commit(self) -> None:
        self._staged.clear()
        self._committed = True

    def rollback(self) -> List[CompensationRecord]:
        while self._staged:
            action, compensation, details = self._staged.pop()
            now = datetime.now(timezone.utc).isoformat()
            try:
                compensation()
            except Exception as exc:
                logger.error(
                    f"Compensation {action} failed",
                    error_code="compensation_failed",
                    exc_info=True,
                    **details,
                )
                self.compensations.append(CompensationRecord(action, now, False, details, str(exc)))
            else:
                logger.warning(f"Compensated {action}", **details)
                self.compensations.append(CompensationRecord(action, now, True, details))
        return self.compensations

    def __enter__(self) -> 'UnitOfWork':
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        if exc_type is not None and not self._committed:
            self.rollback()
        return False


class _Progress:
    """Tracks the state of one redemption against the transition table."""

    def __init__(self):
        self.state = RedemptionState.RECEIVED
        self.history: List[RedemptionState] = [RedemptionState.RECEIVED]
        self.account: Optional[str] = None
        self.transfer: Optional[TransferEvent] = None

    def advance(self, target: RedemptionState) -> None:
        InvariantChecker.check_state_transition(self.state, target, VALID_TRANSITIONS)
        self.state = target
        self.history.append(target)

    def reject(self) -> None:
        if not self.state.is_terminal():
            self.advance(RedemptionState.REJECTED)


# =============================================================================
# ENGINE
# =============================================================================

class RedemptionEngine:
    """
    Authorizes and executes blank-check redemptions.

    Example:
        engine = RedemptionEngine(custodians, custodian_id=custodian)
        account = engine.account_for(signers, threshold, asset)
        ledger.mint(account, 100)
        receipt = engine.redeem(request)
    """

    def __init__(
        self,
        custodians: CustodianRegistry,
        card_nonces: Optional[CardNonceRegistry] = None,
        check_nonces: Optional[CheckNonceRegistry] = None,
        custodian_id: Optional[str] = None,
        verifier: Optional[SignatureVerifier] = None,
        config: Optional[CheckbookConfig] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.config = config or get_config()
        self.custodians = custodians
        self.card_nonces = card_nonces or CardNonceRegistry()
        self.check_nonces = check_nonces or CheckNonceRegistry()

        result = Validators.validate_address(
            custodian_id or self.config.engine.custodian_id.get(), "custodian_id",
        )
        result.raise_if_invalid()
        self.custodian_id = result.sanitized_value

        self.verifier = verifier or SignatureVerifier(
            require_low_s=self.config.signatures.require_low_s.get(),
        )
        self.validator = ThresholdValidator(self.verifier)
        self.audit = audit or AuditLogger(
            get_logger("audit", Component.ENGINE),
            window=self.config.engine.audit_window.get(),
        )
        self.max_signers = self.config.engine.max_signers.get()
        self.audit_enabled = self.config.engine.audit_enabled.get()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def account_for(
        self,
        signers: Union[SignerSet, Sequence[str]],
        threshold: ThresholdConfig,
        asset_contract_id: str,
    ) -> str:
        """Virtual account for a signer set at this engine's custodian."""
        if not isinstance(signers, SignerSet):
            signers = SignerSet.from_list(signers, threshold)
        return derive_account(signers, threshold, asset_contract_id, self.custodian_id)

    def check_status(self, account: str, bearer_secret_identity: str) -> Optional[str]:
        """Recipient that redeemed the check, or None if it is still open."""
        return self.check_nonces.peek(account, bearer_secret_identity)

    # -------------------------------------------------------------------------
    # Shape
    # -------------------------------------------------------------------------

    def _signer_set(self, request: RedemptionRequest) -> SignerSet:
        threshold = request.threshold
        if len(request.signers) > self.max_signers:
            raise MalformedRequest(
                f"Too many signers: {len(request.signers)} exceeds {self.max_signers}"
            )
        if len(request.signatures) != threshold.signature_count:
            raise MalformedRequest(
                f"Expected {threshold.signature_count} signatures, got {len(request.signatures)}"
            )
        if len(request.card_digests) != threshold.required_card:
            raise MalformedRequest(
                f"Expected {threshold.required_card} card digests, got {len(request.card_digests)}"
            )
        try:
            return SignerSet.from_list(request.signers, threshold)
        except ValidationErrors as exc:
            raise MalformedRequest(str(exc)) from exc

    def _verify_primaries(self, request: RedemptionRequest, signer_set: SignerSet) -> None:
        digest = blank_check_digest(
            request.asset_contract_id,
            request.face_value,
            request.bearer_secret_identity,
        )
        self.validator.verify_signers(digest, signer_set, request.threshold, request.primary_signatures)
        self.validator.reject_duplicates(signer_set.combined())

    def _card_pairs(self, request: RedemptionRequest, signer_set: SignerSet) -> List[Tuple[str, str]]:
        return list(zip(signer_set.required_cards(request.threshold), request.card_digests))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def preflight(self, request: RedemptionRequest) -> str:
        """
        Run every check redeem() would run without claiming anything.

        Returns the derived account. A later redeem() can still lose a race
        for the same nonces.
        """
        signer_set = self._signer_set(request)
        self._verify_primaries(request, signer_set)

        if request.threshold.uses_cards:
            self.validator.verify_card_signers(
                request.card_digests, signer_set, request.threshold, request.card_signatures,
            )
            for card, digest_hash in self._card_pairs(request, signer_set):
                if self.card_nonces.is_used(card, digest_hash):
                    raise CardNonceReused()

        self.validator.verify_recipient_claim(
            request.recipient, request.bearer_secret_identity, request.recipient_signature,
        )
        account = derive_account(
            signer_set, request.threshold, request.asset_contract_id, self.custodian_id,
        )
        if self.check_nonces.peek(account, request.bearer_secret_identity) is not None:
            raise CheckNonceReused()
        return account

    @timed_operation(logger, "redeem")
    def redeem(self, request: RedemptionRequest) -> RedemptionReceipt:
        """
        Redeem a blank check.

        Returns a receipt for a settled or cancelled redemption. Raises a
        RedemptionRejected subclass otherwise, with every staged nonce
        claim released.
        """
        token = set_correlation_id(generate_correlation_id())
        progress = _Progress()
        try:
            with UnitOfWork() as uow:
                self._execute(request, progress, uow)
                uow.commit()
            return self._receipt(request, progress)
        except RedemptionRejected as exc:
            progress.reject()
            logger.warning(
                f"Redemption rejected: {exc.message}",
                error_code=exc.reason.value,
                account=progress.account,
                bearer=request.bearer_secret_identity,
                last_state=progress.history[-2].value,
            )
            self._audit(progress.account, request, "rejected", reason=exc.reason.value)
            raise
        finally:
            reset_correlation_id(token)

    def _receipt(self, request: RedemptionRequest, progress: _Progress) -> RedemptionReceipt:
        outcome = (
            RedemptionOutcome.CANCELLED
            if progress.state is RedemptionState.CANCELLED
            else RedemptionOutcome.SETTLED
        )
        receipt = RedemptionReceipt(
            redemption_id=uuid.uuid4().hex,
            outcome=outcome,
            account=progress.account,
            recipient=request.recipient,
            bearer_secret_identity=request.bearer_secret_identity,
            asset_contract_id=request.asset_contract_id,
            face_value=request.face_value,
            transfer=progress.transfer,
            states=list(progress.history),
            correlation_id=get_correlation_id(),
        )
        logger.info(
            f"Redemption {outcome.value}",
            account=progress.account,
            recipient=request.recipient,
            redemption_id=receipt.redemption_id,
        )
        self._audit(progress.account, request, outcome.value, recipient=request.recipient)
        return receipt

    def _execute(
        self,
        request: RedemptionRequest,
        progress: _Progress,
        uow: UnitOfWork,
    ) -> None:
        signer_set = self._signer_set(request)
        threshold = request.threshold

        self._verify_primaries(request, signer_set)
        progress.advance(RedemptionState.SIGNERS_VERIFIED)

        if threshold.uses_cards:
            self.validator.verify_card_signers(
                request.card_digests, signer_set, threshold, request.card_signatures,
            )
            for claim in self.card_nonces.claim_all(self._card_pairs(request, signer_set)):
                self._stage_release(uow, "release_card_nonce", self.card_nonces.release, claim)
            progress.advance(RedemptionState.CARDS_VERIFIED)

        self.validator.verify_recipient_claim(
            request.recipient, request.bearer_secret_identity, request.recipient_signature,
        )
        progress.advance(RedemptionState.RECIPIENT_VERIFIED)

        account = derive_account(signer_set, threshold, request.asset_contract_id, self.custodian_id)
        progress.account = account
        progress.advance(RedemptionState.ACCOUNT_DERIVED)

        if self.check_nonces.peek(account, request.bearer_secret_identity) is not None:
            raise CheckNonceReused()
        claim = self.check_nonces.claim(account, request.bearer_secret_identity, request.recipient)
        self._stage_release(uow, "release_check_nonce", self.check_nonces.release, claim)
        progress.advance(RedemptionState.NONCE_CLAIMED)

        if CryptoUtils.same_identity(request.recipient, account):
            progress.advance(RedemptionState.CANCELLED)
            return

        try:
            progress.transfer = self.custodians.move(
                request.asset_contract_id, account, request.recipient, request.face_value,
            )
        except CustodianError as exc:
            raise CustodianFailure() from exc
        progress.advance(RedemptionState.SETTLED)

    @staticmethod
    def _stage_release(
        uow: UnitOfWork,
        action: str,
        release: Callable[[NonceClaim], bool],
        claim: NonceClaim,
    ) -> None:
        uow.stage(action, lambda: release(claim), key=list(claim.key), version=claim.version)

    def _audit(self, account: Optional[str], request: RedemptionRequest, outcome: str, **details: Any) -> None:
        if not self.audit_enabled:
            return
        self.audit.record(
            "redeem",
            account or "",
            request.bearer_secret_identity,
            outcome,
            asset_contract_id=request.asset_contract_id,
            **details,
        )
