"""
Redemption engine tests.

Exercises the ordered checks of a redemption, the reason each rejection
reports, and the guarantee that a rejected redemption leaves no nonce
claims or value movements behind.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from checkbook.config import ConfigManager
from checkbook.custodian import CustodianError, InsufficientFunds, UnknownAsset
from checkbook.derivation import derive_account
from checkbook.engine import (
    VALID_TRANSITIONS,
    RedemptionOutcome,
    RedemptionRequest,
    RedemptionState,
    UnitOfWork,
)
from checkbook.hardening import (
    CardNonceReused,
    CheckNonceReused,
    CustodianFailure,
    DuplicateSigner,
    MalformedRequest,
    RedemptionRejected,
    RejectionReason,
    SignatureMismatch,
    SignerScope,
    ValidationErrors,
)
from checkbook.signatures import blank_check_digest
from checkbook.threshold import SignerSet

UNIQUE_ASSET = "0x" + "b2" * 20


class TestSettlement:

    def test_single_signer_settles(self, world, recipient):
        check = world.blank_check(face_value=100)

        receipt = world.engine.redeem(check.request(recipient))

        assert receipt.outcome is RedemptionOutcome.SETTLED
        assert receipt.settled
        assert receipt.account == check.account
        assert receipt.transfer.value == 100
        assert world.fungible.balance_of(recipient) == 100
        assert world.fungible.balance_of(check.account) == 0
        assert world.engine.check_status(check.account, check.bearer.identity) == recipient

    def test_receipt_records_state_path(self, world, recipient):
        check = world.blank_check()

        receipt = world.engine.redeem(check.request(recipient))

        assert receipt.states == [
            RedemptionState.RECEIVED,
            RedemptionState.SIGNERS_VERIFIED,
            RedemptionState.RECIPIENT_VERIFIED,
            RedemptionState.ACCOUNT_DERIVED,
            RedemptionState.NONCE_CLAIMED,
            RedemptionState.SETTLED,
        ]
        assert receipt.to_dict()["outcome"] == "settled"
        assert receipt.correlation_id.startswith("corr-")

    def test_two_of_three_settles(self, world, recipient):
        check = world.blank_check(required_primary=2, total_primary=3, face_value=7)

        world.engine.redeem(check.request(recipient))

        assert world.fungible.balance_of(recipient) == 7

    def test_cards_settle_and_consume_digests(self, world, recipient):
        check = world.blank_check(1, 1, 2, 3)
        digests = check.card_digests()

        receipt = world.engine.redeem(check.request(recipient, card_digests=digests))

        assert RedemptionState.CARDS_VERIFIED in receipt.states
        for card, digest in zip(check.cards, digests):
            assert world.card_nonces.is_used(card.identity, digest)
        assert not world.card_nonces.is_used(check.cards[2].identity, digests[0])

    def test_unique_asset_settles(self, world, recipient):
        check = world.blank_check(asset=UNIQUE_ASSET, face_value="42")

        world.engine.redeem(check.request(recipient))

        assert world.unique.owner_of("42") == recipient

    def test_account_for_matches_derivation(self, world):
        check = world.blank_check(1, 2, 1, 1, fund=False)
        signer_set = SignerSet.from_list(check.signers, check.threshold)

        assert check.account == derive_account(signer_set, check.threshold, check.asset, world.engine.custodian_id)


class TestReplayProtection:

    def test_replay_rejected(self, world, recipient):
        check = world.blank_check(face_value=50)
        world.fungible.mint(check.account, 50)
        world.engine.redeem(check.request(recipient))

        with pytest.raises(CheckNonceReused) as exc_info:
            world.engine.redeem(check.request(recipient))

        assert exc_info.value.message == "Nonce already used"
        assert exc_info.value.reason is RejectionReason.CHECK_NONCE_REUSED
        assert world.fungible.balance_of(recipient) == 50
        assert world.fungible.balance_of(check.account) == 50

    def test_second_recipient_rejected(self, world, recipient):
        check = world.blank_check()
        world.engine.redeem(check.request(recipient))

        with pytest.raises(CheckNonceReused):
            world.engine.redeem(check.request(world.party().identity))

        assert world.engine.check_status(check.account, check.bearer.identity) == recipient

    def test_card_digest_is_global(self, world, recipient):
        card = world.party()
        first = world.blank_check(1, 1, 1, 1, cards=[card])
        second = world.blank_check(1, 1, 1, 1, cards=[card])
        digests = first.card_digests()
        world.engine.redeem(first.request(recipient, card_digests=digests))

        other_engine = world.new_engine()
        with pytest.raises(CardNonceReused) as exc_info:
            other_engine.redeem(second.request(recipient, card_digests=digests))

        assert exc_info.value.message == "Card nonce already used"
        assert world.engine.check_status(second.account, second.bearer.identity) is None

    def test_concurrent_redemptions_single_winner(self, world):
        check = world.blank_check(face_value=10)
        request = check.request(world.party().identity)
        engines = [world.new_engine() for _ in range(8)]

        def attempt(engine):
            try:
                return engine.redeem(request)
            except CheckNonceReused:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, engines))

        assert sum(r is not None for r in results) == 1
        assert world.fungible.balance_of(request.recipient) == 10


class TestRejections:

    def test_wrong_primary_signer(self, world, recipient):
        check = world.blank_check()
        signatures = check.signatures(recipient, [])
        digest = blank_check_digest(check.asset, check.face_value, check.bearer.identity)
        signatures[1] = world.party().sign(digest)

        with pytest.raises(SignatureMismatch) as exc_info:
            world.engine.redeem(check.request(recipient, signatures=signatures))

        assert exc_info.value.scope is SignerScope.SIGNER
        assert world.engine.check_status(check.account, check.bearer.identity) is None
        assert world.fungible.balance_of(check.account) == 100

    def test_face_value_is_bound(self, world, recipient):
        check = world.blank_check(face_value=100)
        world.fungible.mint(check.account, 900)

        with pytest.raises(SignatureMismatch):
            world.engine.redeem(check.request(recipient, face_value=1000))

    def test_primary_failure_claims_no_card_digest(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        digests = check.card_digests()
        signatures = check.signatures(recipient, digests)
        signatures[1] = signatures[2]

        with pytest.raises(SignatureMismatch):
            world.engine.redeem(check.request(recipient, card_digests=digests, signatures=signatures))

        assert not world.card_nonces.is_used(check.cards[0].identity, digests[0])

    def test_card_signature_mismatch(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        digests = check.card_digests()
        signatures = check.signatures(recipient, [world.fresh_digest()])

        with pytest.raises(SignatureMismatch) as exc_info:
            world.engine.redeem(check.request(recipient, card_digests=digests, signatures=signatures))

        assert exc_info.value.scope is SignerScope.CARD
        assert len(world.card_nonces) == 0

    def test_duplicate_signer(self, world, recipient):
        shared = world.party()
        check = world.blank_check(1, 1, 1, 1, primaries=[shared], cards=[shared])

        with pytest.raises(DuplicateSigner) as exc_info:
            world.engine.redeem(check.request(recipient))

        assert exc_info.value.message == "Card address has been used already"
        assert len(world.card_nonces) == 0

    def test_duplicate_signer_without_cards(self, world, recipient):
        shared = world.party()
        check = world.blank_check(1, 2, primaries=[shared, shared])

        with pytest.raises(DuplicateSigner):
            world.engine.redeem(check.request(recipient))

    def test_recipient_substitution_releases_card_claims(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        digests = check.card_digests()
        honest = check.request(recipient, card_digests=digests)
        thief = world.party().identity

        with pytest.raises(SignatureMismatch) as exc_info:
            world.engine.redeem(check.request(
                thief, card_digests=digests, signatures=list(honest.signatures),
            ))

        assert exc_info.value.scope is SignerScope.RECIPIENT
        assert exc_info.value.message == "Invalid nonce"
        assert not world.card_nonces.is_used(check.cards[0].identity, digests[0])
        world.engine.redeem(honest)

    def test_signature_count_must_match(self, world, recipient):
        check = world.blank_check(2, 2)
        request = check.request(recipient)

        with pytest.raises(MalformedRequest) as exc_info:
            world.engine.redeem(check.request(recipient, signatures=list(request.signatures)[:2]))

        assert exc_info.value.reason is RejectionReason.MALFORMED_REQUEST

    def test_card_digest_count_must_match(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        digests = check.card_digests()
        request = check.request(recipient, card_digests=digests)

        with pytest.raises(MalformedRequest):
            world.engine.redeem(check.request(
                recipient, card_digests=digests + [world.fresh_digest()],
                signatures=list(request.signatures),
            ))

    def test_signer_count_must_match(self, world, recipient):
        check = world.blank_check(1, 2)

        with pytest.raises(MalformedRequest):
            world.engine.redeem(check.request(recipient, signers=check.signers[:1]))

    def test_max_signers(self, world, recipient):
        ConfigManager().set("engine.max_signers", 2)
        engine = world.new_engine()
        check = world.blank_check(1, 3)

        with pytest.raises(MalformedRequest, match="Too many signers"):
            engine.redeem(check.request(recipient))

    def test_rejections_share_base_class(self, world, recipient):
        check = world.blank_check()
        world.engine.redeem(check.request(recipient))

        with pytest.raises(RedemptionRejected) as exc_info:
            world.engine.redeem(check.request(recipient))

        assert exc_info.value.to_dict()["reason"] == "check_nonce_reused"


class TestSelfRedeem:

    def test_redeem_to_account_cancels(self, world):
        check = world.blank_check(face_value=30)

        receipt = world.engine.redeem(check.request(check.account))

        assert receipt.outcome is RedemptionOutcome.CANCELLED
        assert receipt.transfer is None
        assert receipt.states[-1] is RedemptionState.CANCELLED
        assert world.fungible.balance_of(check.account) == 30
        assert world.fungible.events == []

    def test_cancellation_consumes_nonce(self, world, recipient):
        check = world.blank_check(face_value=30)
        world.engine.redeem(check.request(check.account))

        with pytest.raises(CheckNonceReused):
            world.engine.redeem(check.request(recipient))

        assert world.engine.check_status(check.account, check.bearer.identity) == check.account

    def test_cancellation_needs_no_funds(self, world):
        check = world.blank_check(fund=False)

        receipt = world.engine.redeem(check.request(check.account))

        assert receipt.outcome is RedemptionOutcome.CANCELLED


class TestCustodianFailure:

    def test_insufficient_funds_releases_everything(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1, face_value=100, fund=False)
        world.fungible.mint(check.account, 99)
        digests = check.card_digests()
        request = check.request(recipient, card_digests=digests)

        with pytest.raises(CustodianFailure) as exc_info:
            world.engine.redeem(request)

        assert isinstance(exc_info.value.__cause__, InsufficientFunds)
        assert exc_info.value.reason is RejectionReason.CUSTODIAN_FAILURE
        assert world.engine.check_status(check.account, check.bearer.identity) is None
        assert not world.card_nonces.is_used(check.cards[0].identity, digests[0])
        assert world.fungible.balance_of(check.account) == 99

    def test_retry_after_funding(self, world, recipient):
        check = world.blank_check(face_value=100, fund=False)
        request = check.request(recipient)
        with pytest.raises(CustodianFailure):
            world.engine.redeem(request)

        world.fungible.mint(check.account, 100)
        receipt = world.engine.redeem(request)

        assert receipt.settled

    def test_unknown_asset(self, world, recipient):
        check = world.blank_check(asset="0x" + "dd" * 20, fund=False)

        with pytest.raises(CustodianFailure) as exc_info:
            world.engine.redeem(check.request(recipient))

        assert isinstance(exc_info.value.__cause__, UnknownAsset)

    def test_unique_asset_not_owned(self, world, recipient):
        check = world.blank_check(asset=UNIQUE_ASSET, face_value="5", fund=False)

        with pytest.raises(CustodianFailure):
            world.engine.redeem(check.request(recipient))

        assert world.engine.check_status(check.account, check.bearer.identity) is None

    def test_asset_id_face_value_on_fungible_asset(self, world, recipient):
        check = world.blank_check(face_value="30")

        with pytest.raises(CustodianFailure) as exc_info:
            world.engine.redeem(check.request(recipient))

        assert type(exc_info.value.__cause__) is CustodianError
        assert world.fungible.balance_of(check.account) == 30
        assert world.fungible.balance_of(recipient) == 0
        assert world.engine.check_status(check.account, check.bearer.identity) is None

    def test_amount_face_value_on_unique_asset(self, world, recipient):
        check = world.blank_check(asset=UNIQUE_ASSET, face_value=30)

        with pytest.raises(CustodianFailure):
            world.engine.redeem(check.request(recipient))

        assert world.unique.owner_of("30") == check.account
        assert world.engine.check_status(check.account, check.bearer.identity) is None


class TestPreflight:

    def test_preflight_claims_nothing(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        digests = check.card_digests()
        request = check.request(recipient, card_digests=digests)

        assert world.engine.preflight(request) == check.account
        assert world.engine.check_status(check.account, check.bearer.identity) is None
        assert not world.card_nonces.is_used(check.cards[0].identity, digests[0])
        world.engine.redeem(request)

    def test_preflight_after_redeem(self, world, recipient):
        check = world.blank_check()
        request = check.request(recipient)
        world.engine.redeem(request)

        with pytest.raises(CheckNonceReused):
            world.engine.preflight(request)

    def test_preflight_sees_used_card_digest(self, world, recipient):
        card = world.party()
        first = world.blank_check(1, 1, 1, 1, cards=[card])
        second = world.blank_check(1, 1, 1, 1, cards=[card])
        digests = first.card_digests()
        world.engine.redeem(first.request(recipient, card_digests=digests))

        with pytest.raises(CardNonceReused):
            world.engine.preflight(second.request(recipient, card_digests=digests))


class TestAudit:

    def test_outcomes_are_audited(self, world, recipient):
        check = world.blank_check()
        world.engine.redeem(check.request(recipient))
        with pytest.raises(CheckNonceReused):
            world.engine.redeem(check.request(recipient))

        events = world.engine.audit.events
        assert [e.outcome for e in events] == ["settled", "rejected"]
        assert events[1].details["reason"] == "check_nonce_reused"
        assert world.engine.audit.verify_chain()

    def test_audit_can_be_disabled(self, world, recipient):
        ConfigManager().set("engine.audit_enabled", False)
        engine = world.new_engine()
        check = world.blank_check()

        engine.redeem(check.request(recipient))

        assert engine.audit.events == []

    def test_audit_window_bounds_memory(self, world, recipient):
        ConfigManager().set("engine.audit_window", 5)
        engine = world.new_engine()
        check = world.blank_check()
        engine.redeem(check.request(recipient))

        for _ in range(20):
            with pytest.raises(CheckNonceReused):
                engine.redeem(check.request(recipient))

        events = engine.audit.events
        assert len(events) == 5
        assert all(e.outcome == "rejected" for e in events)
        assert engine.audit.head == events[-1].event_hash
        assert engine.audit.verify_chain()


class TestRequestValidation:

    def test_invalid_identity(self, world, recipient):
        check = world.blank_check()

        with pytest.raises(ValidationErrors):
            check.request("0x1234")

    def test_negative_face_value(self, world, recipient):
        check = world.blank_check()

        with pytest.raises(ValidationErrors):
            check.request(recipient, face_value=-1)

    def test_dict_roundtrip(self, world, recipient):
        check = world.blank_check(1, 1, 1, 1)
        request = check.request(recipient)

        again = RedemptionRequest.from_dict(request.to_dict())

        assert again.to_dict() == request.to_dict()
        assert world.engine.redeem(again).settled


class TestStateMachine:

    def test_terminal_states_have_no_exits(self):
        for state in RedemptionState:
            if state.is_terminal():
                assert state not in VALID_TRANSITIONS

    def test_every_live_state_can_reject(self):
        for state, targets in VALID_TRANSITIONS.items():
            assert RedemptionState.REJECTED in targets, state


class TestUnitOfWork:

    def test_rollback_runs_newest_first(self):
        calls = []
        with pytest.raises(RuntimeError):
            with UnitOfWork() as uow:
                uow.stage("first", lambda: calls.append("first"))
                uow.stage("second", lambda: calls.append("second"))
                raise RuntimeError("boom")

        assert calls == ["second", "first"]
        assert [c.action for c in uow.compensations] == ["second", "first"]

    def test_commit_discards_compensations(self):
        calls = []
        with UnitOfWork() as uow:
            uow.stage("first", lambda: calls.append("first"))
            uow.commit()

        assert calls == []
        assert uow.pending == 0

    def test_failing_compensation_does_not_stop_others(self):
        calls = []

        def broken():
            raise ValueError("compensation broke")

        uow = UnitOfWork()
        uow.stage("first", lambda: calls.append("first"))
        uow.stage("broken", broken)
        records = uow.rollback()

        assert calls == ["first"]
        assert [r.success for r in records] == [False, True]
        assert records[0].error == "compensation broke"
