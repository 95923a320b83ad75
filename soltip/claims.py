from __future__ import annotations

import logging
import secrets
from typing import List, Tuple

from soltip.accounts import AccountResolver
from soltip.errors import ClaimInFlight, ClaimNotFound, RecipientNotFundable
from soltip.models import (
    SUPPORTED_CURRENCIES,
    Account,
    Batch,
    Direction,
    LedgerEvent,
    PendingClaim,
    TipIntent,
)
from soltip.store import AccountStore
from soltip.utils import is_whole_lamports, normalize_handle, same_handle, utc_now_iso

logger = logging.getLogger("soltip.claims")


def claim_reference() -> str:
    return f"claim-{secrets.token_hex(12)}"


class PendingClaimLedger:
    """Value owed to a recipient that has not landed as a confirmed credit yet."""

    def __init__(self, store: AccountStore):
        self.store = store

    def record_pending(self, recipient: Account, batch: Batch) -> int:
        """One claim per intent; intents already pending are skipped. Returns how many were added."""
        added = 0
        for intent in batch.intents:
            claim = PendingClaim(
                amount=intent.amount,
                currency=intent.currency,
                origin_reference=intent.origin_reference,
                sender=normalize_handle(intent.sender_handle),
                created_at=utc_now_iso(),
            )
            if recipient.find_claim(claim.origin_reference, claim.sender) is not None:
                continue
            if self.store.add_pending_claim(recipient.handle, claim):
                recipient.pending_claims.append(claim)
                added += 1
        if added:
            logger.info(
                "recorded %d pending claim(s) for %s from %s (%s %s)",
                added,
                recipient.handle,
                batch.sender_handle,
                batch.total_amount,
                batch.currency,
            )
        return added

    def clear_for_batch(self, recipient: Account, batch: Batch) -> int:
        keys = [(i.origin_reference, i.sender_handle) for i in batch.intents]
        removed = self.store.remove_pending_claims(recipient.handle, keys)
        cleared = {(ref, sender.lower()) for ref, sender in keys}
        recipient.pending_claims = [c for c in recipient.pending_claims if c.key not in cleared]
        return removed

    def list_pending(self, handle: str) -> List[PendingClaim]:
        return self.store.pending_claims(handle)

    def resolve_claim(self, recipient: Account, origin_reference: str, sender: str) -> LedgerEvent:
        """
        Settle one claim on the recipient's request.

        The recipient needs an address to be credited. A claim whose on-chain
        transfer timed out is refused until reconciliation decides its outcome,
        so the same tip is never credited twice.
        """
        if not recipient.is_fundable:
            raise RecipientNotFundable(f"{recipient.handle} has no wallet address to receive funds")

        sender = normalize_handle(sender)
        claim = next(
            (
                c
                for c in self.store.pending_claims(recipient.handle)
                if c.key == (origin_reference, sender.lower())
            ),
            None,
        )
        if claim is None:
            raise ClaimNotFound(recipient.handle, origin_reference, sender)

        in_flight = self.store.unsettled_transfer_for(origin_reference, sender)
        if in_flight is not None:
            raise ClaimInFlight(
                f"claim {origin_reference} from {sender} is covered by transfer "
                f"{in_flight.chain_tx_id} ({in_flight.status.value}); run reconcile first"
            )

        event = LedgerEvent(
            direction=Direction.CREDIT,
            amount=claim.amount,
            currency=claim.currency,
            counterparty_handle=claim.sender,
            chain_tx_id=claim_reference(),
            timestamp=utc_now_iso(),
            origin_reference=claim.origin_reference,
        )
        if not self.store.settle_claim(recipient.handle, claim, event):
            # Removed concurrently (settled by a transfer or another claim call)
            raise ClaimNotFound(recipient.handle, origin_reference, sender)

        recipient.pending_claims = [c for c in recipient.pending_claims if c.key != claim.key]
        recipient.history.append(event)
        logger.info(
            "claim %s from %s settled for %s: %s %s",
            origin_reference,
            sender,
            recipient.handle,
            claim.amount,
            claim.currency,
        )
        return event


def ingest_tip(
    resolver: AccountResolver, ledger: PendingClaimLedger, intent: TipIntent
) -> Tuple[Account, int]:
    """
    Record a tip that did not arrive as a mention.

    The recipient gets a custodial wallet if it has none, and the amount is
    owed to it as a pending claim. Nothing moves on-chain. Returns the
    recipient and how many claims were added (0 when already recorded).
    """
    if intent.amount <= 0 or not is_whole_lamports(intent.amount):
        raise ValueError(f"Invalid tip amount: {intent.amount}")
    if intent.currency not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {intent.currency}")
    if not intent.origin_reference:
        raise ValueError("A tip needs an origin reference")
    if same_handle(intent.sender_handle, intent.recipient_handle):
        raise ValueError("Sender and recipient are the same handle")

    recipient = resolver.ensure_custodial_account(intent.recipient_handle)
    batch = Batch(
        sender_handle=normalize_handle(intent.sender_handle),
        recipient_handle=recipient.handle,
        currency=intent.currency,
        intents=[intent],
    )
    return recipient, ledger.record_pending(recipient, batch)
