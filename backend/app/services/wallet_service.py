"""Custodial wallets: one keypair per user, private keys encrypted at rest."""

from __future__ import annotations

from eth_account import Account
from eth_account.signers.local import LocalAccount
from loguru import logger
from sqlalchemy.exc import IntegrityError
from web3 import Web3

from app.db import SessionFactory, session_scope
from app.errors import NotFound
from app.repositories import WalletRepository
from chain.crypto import decrypt_private_key, encrypt_private_key, load_key
from chain.secrets import SecretStore, get_secret_store

ENCRYPTION_KEY_SECRET = "wallet_encryption_key"
TREASURY_KEY_SECRET = "treasury_private_key"


class CustodialWalletManager:
    """Create wallets and hand out in-process signers; plaintext keys never leave this class's callers."""

    def __init__(
        self,
        *,
        secrets: SecretStore | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._secrets = secrets or get_secret_store()
        self._scope = session_factory or session_scope
        self._treasury: LocalAccount | None = None

    def create_wallet(self, uid: str) -> str:
        """Return the user's wallet address, generating the keypair on first call."""

        with self._scope() as session:
            existing = WalletRepository(session).get(uid)
            if existing is not None:
                return existing.address

        account = Account.create()
        envelope = encrypt_private_key(Web3.to_hex(account.key), self._encryption_key())
        try:
            with self._scope() as session:
                repo = WalletRepository(session)
                repo.add(uid, address=account.address, encrypted_private_key=envelope)
                repo.link_account(uid, account.address)
        except IntegrityError:
            with self._scope() as session:
                existing = WalletRepository(session).get(uid)
            if existing is None:
                raise
            logger.info("Wallet for user {} was created concurrently; keeping {}", uid, existing.address)
            return existing.address

        logger.info("Created custodial wallet {} for user {}", account.address, uid)
        return account.address

    def get_wallet_address(self, uid: str) -> str:
        with self._scope() as session:
            wallet = WalletRepository(session).get(uid)
            if wallet is None:
                raise NotFound(f"No wallet found for user {uid}")
            return wallet.address

    def get_private_key_for_signing(self, uid: str) -> str:
        with self._scope() as session:
            wallet = WalletRepository(session).get(uid)
            if wallet is None:
                raise NotFound(f"No wallet found for user {uid}")
            envelope = wallet.encrypted_private_key
            legacy = wallet.legacy_private_key

        if envelope:
            return decrypt_private_key(envelope, self._encryption_key())
        if legacy:
            logger.warning("User {} still has an unencrypted wallet key", uid)
            return legacy
        raise NotFound(f"Wallet for user {uid} has no signing key")

    def signer_for(self, uid: str) -> LocalAccount:
        return Account.from_key(self.get_private_key_for_signing(uid))

    def treasury_signer(self) -> LocalAccount:
        if self._treasury is None:
            self._treasury = Account.from_key(self._secrets.get_secret(TREASURY_KEY_SECRET))
        return self._treasury

    def _encryption_key(self) -> bytes:
        return load_key(self._secrets.get_secret(ENCRYPTION_KEY_SECRET))


__all__ = ["CustodialWalletManager"]
