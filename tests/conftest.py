import hashlib
import logging
import os
import pathlib
import sys
from dataclasses import dataclass, field
from typing import Any, List, Optional

import pytest
from ecdsa import SECP256k1, SigningKey


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import checkbook`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from checkbook.config import ConfigManager  # noqa: E402
from checkbook.custodian import CustodianRegistry, FungibleLedger, UniqueAssetLedger  # noqa: E402
from checkbook.engine import RedemptionEngine, RedemptionRequest  # noqa: E402
from checkbook.nonces import CardNonceRegistry, CheckNonceRegistry  # noqa: E402
from checkbook.signatures import (  # noqa: E402
    Signature,
    blank_check_digest,
    identity_of,
    recipient_digest,
    sign_digest,
)
from checkbook.threshold import ThresholdConfig  # noqa: E402


ASSET = "0x" + "a1" * 20
UNIQUE_ASSET = "0x" + "b2" * 20
CUSTODIAN = "0x" + "c3" * 20


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless CHECKBOOK_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('CHECKBOOK_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CHECKBOOK_RUN_SLOW=1 to enable'))


# =============================================================================
# KEYS
# =============================================================================

class Party:
    """A deterministic secp256k1 key and its identity."""

    def __init__(self, secret: int):
        self.key = SigningKey.from_secret_exponent(secret, curve=SECP256k1, hashfunc=hashlib.sha256)
        self.identity = identity_of(self.key)

    def sign(self, digest: bytes) -> Signature:
        return sign_digest(self.key, digest)

    def __repr__(self) -> str:
        return f"Party({self.identity})"


@dataclass
class BlankCheck:
    """Everything a payer hands out, plus the keys tests need to redeem it."""
    world: "CheckbookWorld"
    primaries: List[Party]
    cards: List[Party]
    bearer: Party
    threshold: ThresholdConfig
    asset: str
    face_value: Any
    account: str
    signers: List[str] = field(default_factory=list)

    def card_digests(self) -> List[str]:
        return [self.world.fresh_digest() for _ in range(self.threshold.required_card)]

    def signatures(self, recipient: str, card_digests: List[str]) -> List[Signature]:
        digest = blank_check_digest(self.asset, self.face_value, self.bearer.identity)
        sigs = [self.bearer.sign(recipient_digest(recipient))]
        sigs += [p.sign(digest) for p in self.primaries[:self.threshold.required_primary]]
        sigs += [
            c.sign(bytes.fromhex(d))
            for c, d in zip(self.cards[:self.threshold.required_card], card_digests)
        ]
        return sigs

    def request(self, recipient: str, card_digests: Optional[List[str]] = None, **overrides: Any) -> RedemptionRequest:
        if card_digests is None:
            card_digests = self.card_digests()
        fields = dict(
            asset_contract_id=self.asset,
            recipient=recipient,
            bearer_secret_identity=self.bearer.identity,
            signers=list(self.signers),
            threshold=self.threshold,
            signatures=self.signatures(recipient, card_digests),
            face_value=self.face_value,
            card_digests=card_digests,
        )
        fields.update(overrides)
        return RedemptionRequest(**fields)


class CheckbookWorld:
    """Ledgers, shared registries and an engine bound to one custodian."""

    def __init__(self):
        self.custodians = CustodianRegistry()
        self.fungible = self.custodians.register(FungibleLedger(ASSET))
        self.unique = self.custodians.register(UniqueAssetLedger(UNIQUE_ASSET))
        self.card_nonces = CardNonceRegistry()
        self.check_nonces = CheckNonceRegistry()
        self.engine = self.new_engine()
        self._next_secret = 1000
        self._next_digest = 0

    def new_engine(self, **kwargs: Any) -> RedemptionEngine:
        kwargs.setdefault("card_nonces", self.card_nonces)
        kwargs.setdefault("check_nonces", self.check_nonces)
        kwargs.setdefault("custodian_id", CUSTODIAN)
        return RedemptionEngine(self.custodians, **kwargs)

    def party(self) -> Party:
        self._next_secret += 1
        return Party(self._next_secret)

    def fresh_digest(self) -> str:
        self._next_digest += 1
        return hashlib.sha256(f"card-digest-{self._next_digest}".encode()).hexdigest()

    def blank_check(
        self,
        required_primary: int = 1,
        total_primary: int = 1,
        required_card: int = 0,
        total_card: int = 0,
        asset: str = ASSET,
        face_value: Any = 100,
        fund: bool = True,
        primaries: Optional[List[Party]] = None,
        cards: Optional[List[Party]] = None,
    ) -> BlankCheck:
        threshold = ThresholdConfig(required_primary, total_primary, required_card, total_card)
        primaries = primaries or [self.party() for _ in range(total_primary)]
        cards = cards if cards is not None else [self.party() for _ in range(total_card)]
        signers = [p.identity for p in primaries] + [c.identity for c in cards]
        account = self.engine.account_for(signers, threshold, asset)

        if fund:
            if asset == UNIQUE_ASSET:
                self.unique.mint(account, face_value)
            else:
                self.fungible.mint(account, face_value)

        return BlankCheck(
            world=self,
            primaries=primaries,
            cards=cards,
            bearer=self.party(),
            threshold=threshold,
            asset=asset,
            face_value=face_value,
            account=account,
            signers=signers,
        )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test starts from default configuration and no CHECKBOOK_* overrides."""
    for name in list(os.environ):
        if name.startswith("CHECKBOOK_") and name != "CHECKBOOK_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def party_factory():
    counter = iter(range(1, 10_000))
    return lambda: Party(next(counter))


@pytest.fixture
def world():
    return CheckbookWorld()


@pytest.fixture
def recipient(world):
    return world.party().identity


@pytest.fixture(autouse=True)
def detach_log_handlers():
    """Drop handlers configure_logging() attached to streams a test owned."""
    yield
    from checkbook.observability import StructuredHandler

    root = logging.getLogger("checkbook")
    for handler in list(root.handlers):
        if isinstance(handler, StructuredHandler):
            root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
