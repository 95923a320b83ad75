from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Callable, Optional, Tuple

from soltip.chain import Chain, ConfirmationStatus
from soltip.crypto import KeyVault
from soltip.errors import (
    ChainError,
    ChainRejected,
    DecryptionFailure,
    InsufficientFunds,
    StorageFailure,
    TransferTimedOut,
)
from soltip.models import (
    NATIVE_CURRENCY,
    Account,
    Batch,
    ExecutionResult,
    Outcome,
    TransferRecord,
    TransferStatus,
)
from soltip.store import AccountStore
from soltip.utils import (
    is_whole_lamports,
    lamports_to_sol,
    normalize_handle,
    sol_to_lamports,
    utc_now_iso,
)
from soltip.validation import is_valid_solana_pubkey
from soltip.wallet import Keypair, keypair_from_secret

logger = logging.getLogger("soltip.executor")


class TransferExecutor:
    """
    Moves one batch on-chain from a custodial sender to a recipient address.

    Order is fixed: unlock key, check balance, submit once, poll for
    confirmation up to `timeout_s`, then book credit and debit together.
    Every failure comes back as an ExecutionResult; nothing is retried here.
    """

    def __init__(
        self,
        store: AccountStore,
        vault: KeyVault,
        chain: Chain,
        fee_margin_lamports: int = 5000,
        poll_interval_s: float = 1.5,
        timeout_s: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.vault = vault
        self.chain = chain
        self.fee_margin_lamports = fee_margin_lamports
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self._sleep = sleep
        self._clock = clock

    def execute(self, batch: Batch, sender: Account, recipient: Account) -> ExecutionResult:
        if batch.currency != NATIVE_CURRENCY:
            return ExecutionResult(
                Outcome.UNSUPPORTED_CURRENCY,
                detail=f"{batch.currency} tips are not sent directly",
            )
        if not sender.can_spend:
            return ExecutionResult(Outcome.NOT_ELIGIBLE, detail=f"{sender.handle} has no custodial wallet")
        if not recipient.public_address:
            return ExecutionResult(Outcome.NOT_ELIGIBLE, detail=f"{recipient.handle} has no wallet address")

        if not is_whole_lamports(batch.total_amount):
            return ExecutionResult(Outcome.ERROR, detail=f"{batch.total_amount} SOL is finer than one lamport")
        lamports = sol_to_lamports(batch.total_amount)
        if lamports <= 0:
            return ExecutionResult(Outcome.ERROR, detail="amount is below one lamport")

        record, failure, tracked = self._send(
            sender, recipient.public_address, lamports, recipient.handle, batch
        )
        if failure is not None:
            return failure

        result = self._await(record, tracked)
        if not result.ok:
            return result

        try:
            credit, debit = self.store.settle_transfer(record, utc_now_iso())
        except StorageFailure as e:
            # Funds moved; the transfer row stays 'submitted' for reconcile to book later
            logger.error("transfer %s confirmed but could not be booked: %s", record.chain_tx_id, e)
            if not tracked:
                return ExecutionResult(Outcome.UNTRACKED, chain_tx_id=record.chain_tx_id, detail=str(e))
            return ExecutionResult(Outcome.ERROR, chain_tx_id=record.chain_tx_id, detail=str(e))

        recipient.history.append(credit)
        sender.history.append(debit)
        settled = {(ref, normalize_handle(batch.sender_handle).lower()) for ref in record.origin_references}
        recipient.pending_claims = [c for c in recipient.pending_claims if c.key not in settled]
        logger.info(
            "tip confirmed: %s -> %s %s %s (%s)",
            sender.handle,
            recipient.handle,
            batch.total_amount,
            batch.currency,
            record.chain_tx_id,
        )
        return result

    def balance_of(self, address: str) -> Decimal:
        """On-chain SOL balance of an address."""
        return lamports_to_sol(self.chain.get_balance(address))

    def withdraw(self, account: Account, to_address: str, amount: Decimal) -> ExecutionResult:
        """Move SOL out of a custodial wallet to any address."""
        if not account.can_spend:
            return ExecutionResult(Outcome.NOT_ELIGIBLE, detail=f"{account.handle} has no custodial wallet")
        if not is_valid_solana_pubkey(to_address):
            return ExecutionResult(Outcome.ERROR, detail=f"invalid destination address {to_address!r}")
        if not is_whole_lamports(amount):
            return ExecutionResult(Outcome.ERROR, detail=f"{amount} SOL is finer than one lamport")
        lamports = sol_to_lamports(amount)
        if lamports <= 0:
            return ExecutionResult(Outcome.ERROR, detail="amount must be positive")

        record, failure, tracked = self._send(account, to_address, lamports, to_address, None)
        if failure is not None:
            return failure
        result = self._await(record, tracked)
        if result.ok:
            _, debit = self.store.settle_transfer(record, utc_now_iso())
            account.history.append(debit)
            logger.info("withdrawal confirmed: %s -> %s %s SOL", account.handle, to_address, amount)
        return result

    # --- steps --------------------------------------------------------------

    def unlock(self, account: Account) -> Keypair:
        """Decrypt the account's key and check it still derives the stored address."""
        raw = self.vault.decrypt_secret(account.secret or "")
        try:
            keypair = keypair_from_secret(raw)
        except ValueError as e:
            raise DecryptionFailure(f"stored key for {account.handle} is malformed") from e
        if keypair.address != account.public_address:
            raise DecryptionFailure(f"stored key for {account.handle} does not match its address")
        return keypair

    def check_funds(self, address: str, lamports: int) -> int:
        balance = self.chain.get_balance(address)
        required = lamports + self.fee_margin_lamports
        if balance < required:
            raise InsufficientFunds(address, balance, required)
        return balance

    def wait_for_confirmation(self, tx_id: str) -> None:
        """Poll until confirmed. Raises ChainRejected or TransferTimedOut."""
        started = self._clock()
        deadline = started + self.timeout_s
        while True:
            try:
                status = self.chain.get_confirmation_status(tx_id)
            except ChainError as e:
                logger.warning("status check for %s failed: %s", tx_id, e)
                status = ConfirmationStatus.PENDING
            if status == ConfirmationStatus.CONFIRMED:
                return
            if status == ConfirmationStatus.REJECTED:
                raise ChainRejected(tx_id)
            now = self._clock()
            if now >= deadline:
                raise TransferTimedOut(tx_id, now - started)
            self._sleep(min(self.poll_interval_s, deadline - now))

    def _send(
        self,
        sender: Account,
        to_address: str,
        lamports: int,
        recipient_label: str,
        batch: Optional[Batch],
    ) -> Tuple[Optional[TransferRecord], Optional[ExecutionResult], bool]:
        """(record, failure, tracked). `tracked` is False when the submission has no transfers row."""
        try:
            keypair = self.unlock(sender)
        except DecryptionFailure as e:
            logger.error("cannot unlock wallet of %s: %s", sender.handle, e)
            return None, ExecutionResult(Outcome.DECRYPTION_FAILED, detail=str(e)), False

        try:
            self.check_funds(keypair.address, lamports)
        except InsufficientFunds as e:
            logger.info("%s", e)
            return None, ExecutionResult(Outcome.INSUFFICIENT_FUNDS, detail=str(e)), False
        except ChainError as e:
            logger.warning("balance check for %s failed: %s", sender.handle, e)
            return None, ExecutionResult(Outcome.ERROR, detail=str(e)), False

        try:
            tx_id = self.chain.submit_transfer(keypair, to_address, lamports)
        except ChainError as e:
            logger.warning("submission from %s failed: %s", sender.handle, e)
            return None, ExecutionResult(Outcome.ERROR, detail=str(e)), False

        record = TransferRecord(
            chain_tx_id=tx_id,
            sender=sender.handle,
            recipient=recipient_label,
            amount=lamports_to_sol(lamports),
            currency=NATIVE_CURRENCY,
            origin_references=tuple(batch.origin_references) if batch else (),
            status=TransferStatus.SUBMITTED,
            submitted_at_utc=utc_now_iso(),
        )
        try:
            self.store.record_transfer(record)
        except StorageFailure as e:
            logger.error("submitted %s but could not record it: %s", tx_id, e)
            return record, None, False
        return record, None, True

    def _await(self, record: TransferRecord, tracked: bool = True) -> ExecutionResult:
        tx_id = record.chain_tx_id
        try:
            self.wait_for_confirmation(tx_id)
        except ChainRejected as e:
            self._mark(tx_id, TransferStatus.REJECTED)
            return ExecutionResult(Outcome.CHAIN_REJECTED, chain_tx_id=tx_id, detail=str(e))
        except TransferTimedOut as e:
            logger.warning("%s", e)
            if not tracked:
                # Nothing for reconcile to find; its claims must not become claimable
                logger.error("transfer %s timed out and has no transfers row; settle it by hand", tx_id)
                return ExecutionResult(Outcome.UNTRACKED, chain_tx_id=tx_id, detail=str(e))
            self._mark(tx_id, TransferStatus.TIMED_OUT)
            return ExecutionResult(Outcome.TIMED_OUT, chain_tx_id=tx_id, detail=str(e))
        return ExecutionResult(Outcome.CONFIRMED, chain_tx_id=tx_id)

    def _mark(self, tx_id: str, status: TransferStatus) -> None:
        try:
            self.store.mark_transfer(tx_id, status)
        except StorageFailure as e:
            logger.error("could not mark %s as %s: %s", tx_id, status.value, e)
