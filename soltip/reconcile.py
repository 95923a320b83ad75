from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from soltip.chain import Chain, ConfirmationStatus
from soltip.errors import ChainError
from soltip.models import TransferStatus
from soltip.store import AccountStore
from soltip.utils import utc_now_iso

logger = logging.getLogger("soltip.reconcile")


@dataclass
class ReconcileReport:
    confirmed: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    still_pending: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# A blockhash is valid for ~150 slots (about a minute); past this a transaction can no longer land
DEFAULT_EXPIRE_AFTER_S = 600.0


def _age_s(submitted_at_utc: str, now: datetime) -> Optional[float]:
    try:
        submitted = datetime.fromisoformat(submitted_at_utc)
    except ValueError:
        return None
    if submitted.tzinfo is None:
        submitted = submitted.replace(tzinfo=timezone.utc)
    return (now - submitted).total_seconds()


def reconcile_transfers(
    store: AccountStore,
    chain: Chain,
    expire_after_s: float = DEFAULT_EXPIRE_AFTER_S,
    now: Optional[datetime] = None,
) -> ReconcileReport:
    """
    Settle transfers whose outcome was unknown when their cycle ended.

    Looks up every 'timed_out' or 'submitted' transfer by signature. Confirmed
    ones are booked (credit, debit, pending claims removed) exactly once;
    rejected ones, and ones the cluster never saw within `expire_after_s`,
    are marked rejected so their pending claims become claimable.
    Must not run while a poll cycle is active.
    """
    report = ReconcileReport()
    now = now or datetime.now(timezone.utc)
    candidates = store.transfers_with_status(TransferStatus.TIMED_OUT) + store.transfers_with_status(
        TransferStatus.SUBMITTED
    )
    for record in candidates:
        tx_id = record.chain_tx_id
        try:
            status = chain.get_confirmation_status(tx_id)
        except ChainError as e:
            logger.warning("could not check %s: %s", tx_id, e)
            report.errors.append(tx_id)
            continue

        if status == ConfirmationStatus.CONFIRMED:
            store.settle_transfer(record, utc_now_iso())
            logger.info(
                "late confirmation booked: %s -> %s %s %s (%s)",
                record.sender,
                record.recipient,
                record.amount,
                record.currency,
                tx_id,
            )
            report.confirmed.append(tx_id)
        elif status == ConfirmationStatus.REJECTED:
            store.mark_transfer(tx_id, TransferStatus.REJECTED)
            logger.info("transfer %s failed on-chain; its claims stay open", tx_id)
            report.rejected.append(tx_id)
        else:
            age = _age_s(record.submitted_at_utc, now)
            if age is not None and age > expire_after_s:
                store.mark_transfer(tx_id, TransferStatus.REJECTED)
                logger.info("transfer %s never landed after %.0fs; marked rejected", tx_id, age)
                report.expired.append(tx_id)
            else:
                report.still_pending.append(tx_id)
    return report
