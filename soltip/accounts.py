from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Optional

from soltip.crypto import KeyVault
from soltip.errors import AccountRace, StorageFailure
from soltip.models import PLACEHOLDER_PREFIX, Account, CustodyMode
from soltip.store import AccountStore
from soltip.utils import normalize_handle
from soltip.validation import is_valid_handle, is_valid_solana_pubkey
from soltip.wallet import generate_keypair

logger = logging.getLogger("soltip.accounts")


def placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"


class AccountResolver:
    """Maps handles to accounts, provisioning custodial wallets on first reference."""

    def __init__(self, store: AccountStore, vault: KeyVault):
        self.store = store
        self.vault = vault

    def lookup(self, handle: str) -> Optional[Account]:
        return self.store.get_account(handle)

    def export_address(self, handle: str) -> Optional[str]:
        """Public deposit address for a handle, or None when it has no wallet yet."""
        account = self.store.get_account(handle)
        if account is None or not account.public_address:
            return None
        return account.public_address

    def ensure_custodial_account(self, handle: str, external_id: Optional[str] = None) -> Account:
        """
        Return the account for `handle`, creating or completing it as needed.

        1. A signed-up account with a live keypair is returned untouched.
        2. A signed-up account without an address gets a fresh custodial keypair.
        3. A placeholder (created by an earlier inbound tip) is upgraded to the
           real identity when `external_id` is given, keeping address and key.
        4. Otherwise a new custodial account is created, under a placeholder
           identity unless `external_id` is given.
        """
        handle = self._checked_handle(handle)
        if external_id is not None:
            external_id = self._checked_external_id(external_id)

        account = self.store.find_account_by_handle(handle)
        if account is not None:
            if account.public_address and account.secret:
                return account
            return self._attach_keypair(account)

        placeholder = self.store.find_placeholder_by_handle(handle)
        if placeholder is not None:
            return self._adopt(placeholder, external_id)

        return self._create(handle, external_id)

    def register_self_managed(self, handle: str, external_id: str, address: str) -> Account:
        """Signup with a wallet the user holds. Never replaces an address already on file."""
        handle = self._checked_handle(handle)
        external_id = self._checked_external_id(external_id)
        if not is_valid_solana_pubkey(address):
            raise ValueError(f"Invalid Solana address: {address!r}")

        existing = self.store.get_account(handle)
        if existing is None:
            account = Account(
                handle=handle,
                external_id=external_id,
                public_address=address.strip(),
                secret=None,
                custody_mode=CustodyMode.SELF_MANAGED,
            )
            try:
                self.store.insert_account(account)
                logger.info("registered self-managed account %s", handle)
                return account
            except AccountRace:
                existing = self._reread(handle)

        if existing.is_placeholder:
            # Tips may already sit in the placeholder wallet; the user inherits it
            return self._adopt(existing, external_id)
        if not existing.public_address:
            updated = replace(
                existing,
                external_id=external_id,
                public_address=address.strip(),
                secret=None,
                custody_mode=CustodyMode.SELF_MANAGED,
            )
            self.store.save_account(updated)
            return updated
        return existing

    # --- internals ----------------------------------------------------------

    @staticmethod
    def _checked_handle(handle: str) -> str:
        if not is_valid_handle(handle):
            raise ValueError(f"Invalid handle: {handle!r}")
        return normalize_handle(handle)

    @staticmethod
    def _checked_external_id(external_id: str) -> str:
        external_id = external_id.strip()
        if not external_id or external_id.startswith(PLACEHOLDER_PREFIX):
            raise ValueError(f"Invalid external id: {external_id!r}")
        return external_id

    def _attach_keypair(self, account: Account) -> Account:
        if account.public_address:
            # A self-managed wallet already receives funds; its address stays
            return account
        keypair = generate_keypair()
        updated = replace(
            account,
            public_address=keypair.address,
            secret=self.vault.encrypt_secret(keypair.secret_key),
            custody_mode=CustodyMode.CUSTODIAL,
        )
        self.store.save_account(updated)
        logger.info("attached custodial wallet %s to %s", updated.public_address, account.handle)
        return updated

    def _adopt(self, placeholder: Account, external_id: Optional[str]) -> Account:
        if not placeholder.public_address:
            placeholder = self._attach_keypair(placeholder)
        if external_id is None:
            return placeholder
        upgraded = replace(placeholder, external_id=external_id)
        self.store.save_account(upgraded)
        logger.info(
            "assigned pre-created wallet %s to %s", upgraded.public_address, upgraded.handle
        )
        return upgraded

    def _create(self, handle: str, external_id: Optional[str]) -> Account:
        keypair = generate_keypair()
        account = Account(
            handle=handle,
            external_id=external_id or placeholder_id(),
            public_address=keypair.address,
            secret=self.vault.encrypt_secret(keypair.secret_key),
            custody_mode=CustodyMode.CUSTODIAL,
        )
        try:
            self.store.insert_account(account)
        except AccountRace:
            logger.info("lost creation race for %s, using existing record", handle)
            winner = self._reread(handle)
            if winner.is_placeholder:
                return self._adopt(winner, external_id)
            if not winner.public_address:
                return self._attach_keypair(winner)
            return winner
        logger.info(
            "created %s custodial wallet %s for %s",
            "placeholder" if account.is_placeholder else "verified",
            account.public_address,
            handle,
        )
        return account

    def _reread(self, handle: str) -> Account:
        winner = self.store.get_account(handle)
        if winner is None:
            raise StorageFailure(f"account {handle} reported as existing but not found")
        return winner
