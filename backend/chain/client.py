from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any

from eth_account.signers.local import LocalAccount
from loguru import logger
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from app.core.config import Settings, get_settings

from .abi import PREDICTION_ABI, TOKEN_ABI

WEI_PER_TOKEN = Decimal(10) ** 18


class ChainError(RuntimeError):
    pass


class ChainTimeoutError(ChainError):
    """No receipt arrived within the bounded wait; the transaction may still land.

    ``tx_hash`` and ``nonce`` identify the broadcast so callers can look it up
    instead of sending it again.
    """

    def __init__(self, message: str, *, tx_hash: str | None = None, nonce: int | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.nonce = nonce


class ChainNotConfigured(ChainError):
    pass


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    DROPPED = "dropped"


@dataclass(slots=True)
class TxResult:
    tx_hash: str
    block_number: int | None = None


@dataclass(slots=True)
class CreatedMarket:
    tx_hash: str
    on_chain_id: int | None


@dataclass(slots=True)
class TxLookup:
    tx_hash: str
    status: TxStatus
    block_number: int | None = None
    on_chain_id: int | None = None


def to_wei(amount: Decimal | float | str) -> int:
    return int((Decimal(str(amount)) * WEI_PER_TOKEN).to_integral_value(rounding=ROUND_DOWN))


def from_wei(value: int) -> Decimal:
    return Decimal(value) / WEI_PER_TOKEN


class ChainClient:
    """Stateless read/write accessor for the token and prediction contracts."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        web3: Web3 | None = None,
        rpc_timeout: float = 30.0,
    ) -> None:
        self.settings = settings or get_settings()
        self.chain_id = self.settings.chain_id
        self.tx_timeout = self.settings.chain_tx_timeout_seconds
        self.w3 = web3 or Web3(
            Web3.HTTPProvider(
                str(self.settings.chain_rpc_url), request_kwargs={"timeout": rpc_timeout}
            )
        )
        self._token = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.settings.token_contract_address),
            abi=TOKEN_ABI,
        )
        self._prediction = None
        if self.settings.prediction_contract_address:
            self._prediction = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.settings.prediction_contract_address),
                abi=PREDICTION_ABI,
            )

    @property
    def prediction_address(self) -> str:
        return self._prediction_contract().address

    # ------------------------------------------------------------------
    # Reads

    def pending_nonce(self, address: str) -> int:
        return int(
            self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending")
        )

    def token_balance(self, address: str) -> Decimal:
        raw = self._token.functions.balanceOf(Web3.to_checksum_address(address)).call()
        return from_wei(raw)

    def native_balance(self, address: str) -> Decimal:
        return from_wei(self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    def token_allowance(self, owner: str, spender: str) -> Decimal:
        raw = self._token.functions.allowance(
            Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
        ).call()
        return from_wei(raw)

    def lookup_transaction(self, tx_hash: str) -> TxLookup:
        """Where a previously broadcast transaction stands now."""

        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            try:
                self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return TxLookup(tx_hash=tx_hash, status=TxStatus.DROPPED)
            return TxLookup(tx_hash=tx_hash, status=TxStatus.PENDING)
        if receipt.get("status") != 1:
            return TxLookup(
                tx_hash=tx_hash, status=TxStatus.REVERTED, block_number=receipt.get("blockNumber")
            )
        return TxLookup(
            tx_hash=tx_hash,
            status=TxStatus.CONFIRMED,
            block_number=receipt.get("blockNumber"),
            on_chain_id=self._created_market_id(receipt),
        )

    # ------------------------------------------------------------------
    # Token writes

    def transfer_tokens(
        self, signer: LocalAccount, to: str, amount: Decimal, *, nonce: int | None = None
    ) -> TxResult:
        fn = self._token.functions.transfer(Web3.to_checksum_address(to), to_wei(amount))
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    def approve_tokens(
        self, signer: LocalAccount, spender: str, amount: Decimal, *, nonce: int | None = None
    ) -> TxResult:
        fn = self._token.functions.approve(Web3.to_checksum_address(spender), to_wei(amount))
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    # ------------------------------------------------------------------
    # Prediction contract writes

    def create_market(
        self,
        signer: LocalAccount,
        *,
        title: str,
        description: str,
        deadline: datetime,
        nonce: int | None = None,
    ) -> CreatedMarket:
        contract = self._prediction_contract()
        fn = contract.functions.createMarket(title, description, int(deadline.timestamp()))
        result, receipt = self._send(signer, fn, nonce=nonce)
        on_chain_id = self._created_market_id(receipt)
        if on_chain_id is None:
            logger.warning("createMarket tx {} emitted no MarketCreated event", result.tx_hash)
        return CreatedMarket(tx_hash=result.tx_hash, on_chain_id=on_chain_id)

    def place_bet(
        self,
        signer: LocalAccount,
        on_chain_id: int,
        *,
        is_yes: bool,
        amount: Decimal,
        nonce: int | None = None,
    ) -> TxResult:
        fn = self._prediction_contract().functions.placeBet(on_chain_id, is_yes, to_wei(amount))
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    def resolve_market(
        self, signer: LocalAccount, on_chain_id: int, *, outcome_yes: bool, nonce: int | None = None
    ) -> TxResult:
        fn = self._prediction_contract().functions.resolveMarket(on_chain_id, outcome_yes)
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    def cancel_market(
        self, signer: LocalAccount, on_chain_id: int, *, nonce: int | None = None
    ) -> TxResult:
        fn = self._prediction_contract().functions.cancelMarket(on_chain_id)
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    def claim_winnings(
        self, signer: LocalAccount, on_chain_id: int, *, nonce: int | None = None
    ) -> TxResult:
        fn = self._prediction_contract().functions.claimWinnings(on_chain_id)
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    def refund(self, signer: LocalAccount, on_chain_id: int, *, nonce: int | None = None) -> TxResult:
        fn = self._prediction_contract().functions.refund(on_chain_id)
        result, _ = self._send(signer, fn, nonce=nonce)
        return result

    # ------------------------------------------------------------------
    # Internals

    def _prediction_contract(self):
        if self._prediction is None:
            raise ChainNotConfigured("Prediction contract address is not configured")
        return self._prediction

    def _created_market_id(self, receipt) -> int | None:
        if self._prediction is None:
            return None
        for event in self._prediction.events.MarketCreated().process_receipt(receipt, errors=DISCARD):
            return int(event["args"]["marketId"])
        return None

    def _send(self, signer: LocalAccount, fn, *, nonce: int | None) -> tuple[TxResult, Any]:
        tx_nonce = nonce if nonce is not None else self.pending_nonce(signer.address)
        tx = fn.build_transaction(
            {"from": signer.address, "nonce": tx_nonce, "chainId": self.chain_id}
        )
        signed = signer.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Submitted {} from {} nonce={} tx={}", fn.fn_name, signer.address, tx_nonce, tx_hex)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except TimeExhausted as exc:
            raise ChainTimeoutError(
                f"No receipt for {tx_hex} after {self.tx_timeout}s",
                tx_hash=tx_hex,
                nonce=tx_nonce,
            ) from exc
        if receipt.get("status") != 1:
            raise ChainError(f"Transaction {tx_hex} reverted")
        return TxResult(tx_hash=tx_hex, block_number=receipt.get("blockNumber")), receipt


__all__ = [
    "ChainClient",
    "ChainError",
    "ChainNotConfigured",
    "ChainTimeoutError",
    "CreatedMarket",
    "TxLookup",
    "TxResult",
    "TxStatus",
    "from_wei",
    "to_wei",
]
