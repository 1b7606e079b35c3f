from __future__ import annotations

import sys
import threading
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_ledger_engine, create_session_maker, init_db, make_session_scope
from app.repositories import LedgerRepository
from app.services.activity_service import ActivityService
from app.services.ledger_service import LedgerService
from app.services.mirror_service import MirrorService
from app.services.wallet_service import CustodialWalletManager
from chain.client import ChainTimeoutError, CreatedMarket, TxLookup, TxResult, TxStatus
from chain.nonce import TreasuryNonceCoordinator
from chain.secrets import SecretStore

TEST_ENCRYPTION_KEY = "11" * 32
TEST_TREASURY_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_PREDICTION_ADDRESS = "0x000000000000000000000000000000000000dEaD"


class FakeChain:
    """In-memory stand-in for the chain client that records every call."""

    prediction_address = TEST_PREDICTION_ADDRESS

    def __init__(self, *, chain_nonce: int = 0) -> None:
        self.chain_nonce = chain_nonce
        self.calls: list[tuple[str, dict]] = []
        self.fail: dict[str, Exception] = {}
        # Writes named here are broadcast but never produce a receipt.
        self.timeouts: set[str] = set()
        self.transactions: dict[str, TxStatus] = {}
        self.allowances: dict[str, Decimal] = {}
        self.token_balances: dict[str, Decimal] = {}
        self.default_token_balance = Decimal("0")
        self.native = Decimal("1")
        self._created: dict[str, int] = {}
        self._next_market_id = 1
        self._lock = threading.Lock()

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _record(self, name: str, **kwargs) -> TxResult:
        with self._lock:
            self.calls.append((name, kwargs))
            tx_hash = "0x" + f"{len(self.calls):064x}"
            error = self.fail.get(name)
            timed_out = name in self.timeouts
            if error is None:
                if name == "create_market":
                    self._created[tx_hash] = self._next_market_id
                    self._next_market_id += 1
                self.transactions[tx_hash] = TxStatus.PENDING if timed_out else TxStatus.CONFIRMED
        if error is not None:
            raise error
        if timed_out:
            raise ChainTimeoutError(
                f"No receipt for {tx_hash}", tx_hash=tx_hash, nonce=kwargs.get("nonce")
            )
        return TxResult(tx_hash=tx_hash, block_number=len(self.calls))

    def pending_nonce(self, address: str) -> int:
        return self.chain_nonce

    def token_balance(self, address: str) -> Decimal:
        error = self.fail.get("token_balance")
        if error is not None:
            raise error
        return self.token_balances.get(address, self.default_token_balance)

    def native_balance(self, address: str) -> Decimal:
        return self.native

    def token_allowance(self, owner: str, spender: str) -> Decimal:
        return self.allowances.get(owner, Decimal("0"))

    def lookup_transaction(self, tx_hash: str) -> TxLookup:
        with self._lock:
            self.calls.append(("lookup_transaction", {"tx_hash": tx_hash}))
            status = self.transactions.get(tx_hash, TxStatus.DROPPED)
        on_chain_id = self._created.get(tx_hash) if status == TxStatus.CONFIRMED else None
        return TxLookup(tx_hash=tx_hash, status=status, on_chain_id=on_chain_id)

    def transfer_tokens(self, signer, to, amount, *, nonce=None) -> TxResult:
        return self._record("transfer_tokens", to=to, amount=amount, nonce=nonce)

    def approve_tokens(self, signer, spender, amount, *, nonce=None) -> TxResult:
        result = self._record("approve_tokens", signer=signer.address, spender=spender, amount=amount)
        self.allowances[signer.address] = Decimal(amount)
        return result

    def create_market(self, signer, *, title, description, deadline, nonce=None) -> CreatedMarket:
        result = self._record("create_market", title=title, nonce=nonce)
        return CreatedMarket(tx_hash=result.tx_hash, on_chain_id=self._created[result.tx_hash])

    def place_bet(self, signer, on_chain_id, *, is_yes, amount, nonce=None) -> TxResult:
        result = self._record(
            "place_bet", signer=signer.address, on_chain_id=on_chain_id, is_yes=is_yes, amount=amount
        )
        self.allowances[signer.address] = self.allowances.get(signer.address, Decimal("0")) - amount
        return result

    def resolve_market(self, signer, on_chain_id, *, outcome_yes, nonce=None) -> TxResult:
        return self._record("resolve_market", on_chain_id=on_chain_id, outcome_yes=outcome_yes, nonce=nonce)

    def cancel_market(self, signer, on_chain_id, *, nonce=None) -> TxResult:
        return self._record("cancel_market", on_chain_id=on_chain_id, nonce=nonce)

    def claim_winnings(self, signer, on_chain_id, *, nonce=None) -> TxResult:
        return self._record("claim_winnings", signer=signer.address, on_chain_id=on_chain_id)

    def refund(self, signer, on_chain_id, *, nonce=None) -> TxResult:
        return self._record("refund", signer=signer.address, on_chain_id=on_chain_id)


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'stakeledger.db'}",
        wallet_encryption_key=TEST_ENCRYPTION_KEY,
        treasury_private_key=TEST_TREASURY_KEY,
        prediction_contract_address=TEST_PREDICTION_ADDRESS,
        nonce_lock_poll_interval_seconds=0,
        nonce_retry_backoff_seconds=0,
        db_retry_backoff_seconds="0",
        admin_emails="ops@example.com",
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    monkeypatch.setattr("app.db.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_ledger_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield make_session_scope(create_session_maker(engine))
    engine.dispose()


@pytest.fixture
def secret_store(test_settings, session_factory) -> SecretStore:
    return SecretStore(test_settings, session_factory=session_factory, environ={})


@pytest.fixture
def wallets(secret_store, session_factory) -> CustodialWalletManager:
    return CustodialWalletManager(secrets=secret_store, session_factory=session_factory)


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain(chain_nonce=7)


@pytest.fixture
def mirror(fake_chain, wallets, session_factory, test_settings) -> MirrorService:
    nonce = TreasuryNonceCoordinator(
        fake_chain.pending_nonce,
        session_factory=session_factory,
        settings=test_settings,
        sleep=lambda _seconds: None,
    )
    return MirrorService(
        chain=fake_chain,
        wallets=wallets,
        nonce=nonce,
        session_factory=session_factory,
        settings=test_settings,
    )


@pytest.fixture
def ledger(session_factory, mirror, wallets, test_settings) -> LedgerService:
    return LedgerService(
        session_factory=session_factory, mirror=mirror, wallets=wallets, settings=test_settings
    )


@pytest.fixture
def activities(session_factory, mirror) -> ActivityService:
    return ActivityService(session_factory=session_factory, mirror=mirror)


@pytest.fixture
def make_user(ledger, session_factory):
    """Provision an account and top it up to ``balance``."""

    def _make(uid: str, balance: str | Decimal | None = None) -> str:
        snapshot = ledger.ensure_account(uid, email=f"{uid}@example.com")
        if balance is not None:
            delta = Decimal(str(balance)) - snapshot.balance
            with session_factory() as session:
                LedgerRepository(session).credit(uid, delta)
        return uid

    return _make
