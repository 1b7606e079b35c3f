from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models import CustodialWallet, UserAccount


class WalletRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, uid: str) -> CustodialWallet | None:
        return self._session.execute(
            select(CustodialWallet).where(CustodialWallet.uid == uid)
        ).scalar_one_or_none()

    def add(self, uid: str, *, address: str, encrypted_private_key: str) -> CustodialWallet:
        wallet = CustodialWallet(
            uid=uid, address=address, encrypted_private_key=encrypted_private_key
        )
        self._session.add(wallet)
        self._session.flush()
        return wallet

    def link_account(self, uid: str, address: str) -> None:
        self._session.execute(
            update(UserAccount)
            .where(UserAccount.uid == uid)
            .values(wallet_address=address)
            .execution_options(synchronize_session=False)
        )
