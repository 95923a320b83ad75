from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence, Tuple

from soltip.db import DB, connect, get_state, set_state
from soltip.errors import AccountRace, StorageFailure
from soltip.models import (
    PLACEHOLDER_PREFIX,
    Account,
    CustodyMode,
    Direction,
    LedgerEvent,
    PendingClaim,
    TransferRecord,
    TransferStatus,
)
from soltip.utils import normalize_handle, utc_now_iso

logger = logging.getLogger("soltip.store")

CURSOR_KEY = "mentions_since_id"


def _event_from_row(row: sqlite3.Row) -> LedgerEvent:
    return LedgerEvent(
        direction=Direction(row["direction"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        counterparty_handle=row["counterparty_handle"],
        chain_tx_id=row["chain_tx_id"],
        timestamp=row["created_at_utc"],
        origin_reference=row["origin_reference"],
    )


def _claim_from_row(row: sqlite3.Row) -> PendingClaim:
    return PendingClaim(
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        origin_reference=row["origin_reference"],
        sender=row["sender"],
        created_at=row["created_at_utc"],
    )


def _transfer_from_row(row: sqlite3.Row) -> TransferRecord:
    refs = tuple(r for r in row["origin_references"].split(",") if r)
    return TransferRecord(
        chain_tx_id=row["chain_tx_id"],
        sender=row["sender"],
        recipient=row["recipient"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        origin_references=refs,
        status=TransferStatus(row["status"]),
        submitted_at_utc=row["submitted_at_utc"],
        resolved_at_utc=row["resolved_at_utc"],
    )


@dataclass(frozen=True)
class AccountStore:
    """SQLite-backed account store. Every write is atomic per call."""

    db: DB

    @contextmanager
    def _conn(self, op: str) -> Iterator[sqlite3.Connection]:
        try:
            with connect(self.db) as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error("storage failure during %s: %s", op, e)
            raise StorageFailure(f"{op} failed: {e}") from e

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Account:
        handle = row["handle"]
        events = conn.execute(
            "SELECT * FROM ledger_events WHERE handle=? ORDER BY id ASC", (handle,)
        ).fetchall()
        claims = conn.execute(
            "SELECT * FROM pending_claims WHERE handle=? ORDER BY created_at_utc ASC, rowid ASC",
            (handle,),
        ).fetchall()
        return Account(
            handle=handle,
            external_id=row["external_id"],
            public_address=row["public_address"] or "",
            secret=row["encrypted_secret"],
            custody_mode=CustodyMode(row["custody_mode"]),
            history=[_event_from_row(e) for e in events],
            pending_claims=[_claim_from_row(c) for c in claims],
        )

    # --- accounts -----------------------------------------------------------

    def get_account(self, handle: str) -> Optional[Account]:
        """Any record for the handle, verified or placeholder."""
        with self._conn("get_account") as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE handle=?", (normalize_handle(handle),)
            ).fetchone()
            return self._load(conn, row) if row else None

    def find_account_by_handle(self, handle: str) -> Optional[Account]:
        """Accounts whose owner has signed up (real external id)."""
        with self._conn("find_account_by_handle") as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE handle=? AND substr(external_id, 1, ?) != ?",
                (normalize_handle(handle), len(PLACEHOLDER_PREFIX), PLACEHOLDER_PREFIX),
            ).fetchone()
            return self._load(conn, row) if row else None

    def find_placeholder_by_handle(self, handle: str) -> Optional[Account]:
        with self._conn("find_placeholder_by_handle") as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE handle=? AND substr(external_id, 1, ?) = ?",
                (normalize_handle(handle), len(PLACEHOLDER_PREFIX), PLACEHOLDER_PREFIX),
            ).fetchone()
            return self._load(conn, row) if row else None

    def insert_account(self, account: Account) -> None:
        """Create a new record. A duplicate handle raises AccountRace."""
        now = utc_now_iso()
        try:
            with connect(self.db) as conn:
                conn.execute(
                    """INSERT INTO accounts
                    (handle, external_id, public_address, encrypted_secret, custody_mode,
                     created_at_utc, updated_at_utc)
                    VALUES (?,?,?,?,?,?,?)""",
                    (
                        account.handle,
                        account.external_id,
                        account.public_address,
                        account.secret,
                        account.custody_mode.value,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise AccountRace(account.handle) from e
        except sqlite3.Error as e:
            logger.error("storage failure inserting %s: %s", account.handle, e)
            raise StorageFailure(f"insert_account failed: {e}") from e

    def save_account(self, account: Account) -> None:
        """Persist identity and key fields. The public address never changes once set."""
        with self._conn("save_account") as conn:
            row = conn.execute(
                "SELECT public_address FROM accounts WHERE handle=?", (account.handle,)
            ).fetchone()
            if row is None:
                raise StorageFailure(f"save_account: no account for {account.handle}")
            current = row["public_address"] or ""
            if current and current != account.public_address:
                raise StorageFailure(
                    f"refusing to replace public address of {account.handle}"
                )
            conn.execute(
                """UPDATE accounts
                   SET external_id=?, public_address=?, encrypted_secret=?, custody_mode=?,
                       updated_at_utc=?
                   WHERE handle=?""",
                (
                    account.external_id,
                    account.public_address,
                    account.secret,
                    account.custody_mode.value,
                    utc_now_iso(),
                    account.handle,
                ),
            )

    # --- history and claims -------------------------------------------------

    def append_event(self, handle: str, event: LedgerEvent) -> bool:
        """Append to history. Returns False when the same event is already recorded."""
        with self._conn("append_event") as conn:
            return self._insert_event(conn, normalize_handle(handle), event)

    def _insert_event(self, conn: sqlite3.Connection, handle: str, event: LedgerEvent) -> bool:
        cur = conn.execute(
            """INSERT OR IGNORE INTO ledger_events
               (handle, direction, amount, currency, counterparty_handle, chain_tx_id,
                origin_reference, created_at_utc)
               VALUES (?,?,?,?,?,?,?,?)""",
            (
                handle,
                event.direction.value,
                str(event.amount),
                event.currency,
                event.counterparty_handle,
                event.chain_tx_id,
                event.origin_reference,
                event.timestamp,
            ),
        )
        return cur.rowcount == 1

    def history(self, handle: str) -> List[LedgerEvent]:
        with self._conn("history") as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_events WHERE handle=? ORDER BY id ASC",
                (normalize_handle(handle),),
            ).fetchall()
            return [_event_from_row(r) for r in rows]

    def add_pending_claim(self, handle: str, claim: PendingClaim) -> bool:
        """Insert unless (origin_reference, sender) is already pending. Returns True if inserted."""
        with self._conn("add_pending_claim") as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO pending_claims
                   (handle, origin_reference, sender, amount, currency, created_at_utc)
                   VALUES (?,?,?,?,?,?)""",
                (
                    normalize_handle(handle),
                    claim.origin_reference,
                    normalize_handle(claim.sender),
                    str(claim.amount),
                    claim.currency,
                    claim.created_at or utc_now_iso(),
                ),
            )
            return cur.rowcount == 1

    def pending_claims(self, handle: str) -> List[PendingClaim]:
        with self._conn("pending_claims") as conn:
            rows = conn.execute(
                "SELECT * FROM pending_claims WHERE handle=? ORDER BY created_at_utc ASC, rowid ASC",
                (normalize_handle(handle),),
            ).fetchall()
            return [_claim_from_row(r) for r in rows]

    def remove_pending_claims(
        self, handle: str, keys: Sequence[Tuple[str, str]]
    ) -> int:
        with self._conn("remove_pending_claims") as conn:
            return self._delete_claims(conn, normalize_handle(handle), keys)

    def _delete_claims(
        self, conn: sqlite3.Connection, handle: str, keys: Sequence[Tuple[str, str]]
    ) -> int:
        removed = 0
        for origin_reference, sender in keys:
            cur = conn.execute(
                "DELETE FROM pending_claims WHERE handle=? AND origin_reference=? AND sender=?",
                (handle, origin_reference, normalize_handle(sender)),
            )
            removed += cur.rowcount
        return removed

    def settle_claim(
        self, handle: str, claim: PendingClaim, event: LedgerEvent
    ) -> bool:
        """Append the credit and drop the claim in one transaction."""
        with self._conn("settle_claim") as conn:
            removed = self._delete_claims(
                conn, normalize_handle(handle), [(claim.origin_reference, claim.sender)]
            )
            if removed == 0:
                return False
            self._insert_event(conn, normalize_handle(handle), event)
            return True

    # --- transfers ----------------------------------------------------------

    def record_transfer(self, record: TransferRecord) -> None:
        with self._conn("record_transfer") as conn:
            conn.execute(
                """INSERT INTO transfers
                   (chain_tx_id, sender, recipient, amount, currency, origin_references,
                    status, submitted_at_utc, resolved_at_utc)
                   VALUES (?,?,?,?,?,?,?,?,?)""",
                (
                    record.chain_tx_id,
                    record.sender,
                    record.recipient,
                    str(record.amount),
                    record.currency,
                    ",".join(record.origin_references),
                    record.status.value,
                    record.submitted_at_utc,
                    record.resolved_at_utc,
                ),
            )

    def mark_transfer(self, chain_tx_id: str, status: TransferStatus) -> None:
        resolved = None if status == TransferStatus.SUBMITTED else utc_now_iso()
        with self._conn("mark_transfer") as conn:
            conn.execute(
                "UPDATE transfers SET status=?, resolved_at_utc=? WHERE chain_tx_id=?",
                (status.value, resolved, chain_tx_id),
            )

    def get_transfer(self, chain_tx_id: str) -> Optional[TransferRecord]:
        with self._conn("get_transfer") as conn:
            row = conn.execute(
                "SELECT * FROM transfers WHERE chain_tx_id=?", (chain_tx_id,)
            ).fetchone()
            return _transfer_from_row(row) if row else None

    def transfers_with_status(self, status: TransferStatus) -> List[TransferRecord]:
        with self._conn("transfers_with_status") as conn:
            rows = conn.execute(
                "SELECT * FROM transfers WHERE status=? ORDER BY submitted_at_utc ASC",
                (status.value,),
            ).fetchall()
            return [_transfer_from_row(r) for r in rows]

    def unsettled_transfer_for(self, origin_reference: str, sender: str) -> Optional[TransferRecord]:
        """A submitted or timed-out transfer that covers this (post, sender) pair."""
        with self._conn("unsettled_transfer_for") as conn:
            rows = conn.execute(
                "SELECT * FROM transfers WHERE sender=? AND status IN (?, ?)",
                (
                    normalize_handle(sender),
                    TransferStatus.SUBMITTED.value,
                    TransferStatus.TIMED_OUT.value,
                ),
            ).fetchall()
            for row in rows:
                record = _transfer_from_row(row)
                if origin_reference in record.origin_references:
                    return record
            return None

    def settle_transfer(
        self, record: TransferRecord, timestamp: str
    ) -> Tuple[LedgerEvent, LedgerEvent]:
        """Book a confirmed transfer: credit, debit, claim removal and status in one transaction.

        Re-running for the same chain_tx_id adds nothing (events are unique per tx).
        """
        origin = ",".join(record.origin_references)
        credit = LedgerEvent(
            direction=Direction.CREDIT,
            amount=record.amount,
            currency=record.currency,
            counterparty_handle=record.sender,
            chain_tx_id=record.chain_tx_id,
            timestamp=timestamp,
            origin_reference=origin,
        )
        debit = LedgerEvent(
            direction=Direction.DEBIT,
            amount=record.amount,
            currency=record.currency,
            counterparty_handle=record.recipient,
            chain_tx_id=record.chain_tx_id,
            timestamp=timestamp,
            origin_reference=origin,
        )
        with self._conn("settle_transfer") as conn:
            # Withdrawals go to a bare address, not to an account
            if record.recipient.startswith("@"):
                self._insert_event(conn, record.recipient, credit)
            self._insert_event(conn, record.sender, debit)
            self._delete_claims(
                conn,
                record.recipient,
                [(ref, record.sender) for ref in record.origin_references],
            )
            conn.execute(
                "UPDATE transfers SET status=?, resolved_at_utc=? WHERE chain_tx_id=?",
                (TransferStatus.CONFIRMED.value, timestamp, record.chain_tx_id),
            )
        return credit, debit

    # --- poll cursor --------------------------------------------------------

    def get_cursor(self) -> Optional[str]:
        with self._conn("get_cursor") as conn:
            return get_state(conn, CURSOR_KEY)

    def set_cursor(self, since_id: str) -> None:
        with self._conn("set_cursor") as conn:
            set_state(conn, CURSOR_KEY, since_id, utc_now_iso())
