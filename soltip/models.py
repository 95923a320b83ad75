from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


PLACEHOLDER_PREFIX = "temp_"
NATIVE_CURRENCY = "SOL"
SUPPORTED_CURRENCIES = ("SOL", "USDC")


class CustodyMode(str, Enum):
    CUSTODIAL = "custodial"
    SELF_MANAGED = "self_managed"


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DECRYPTION_FAILED = "decryption_failed"
    CHAIN_REJECTED = "chain_rejected"
    TIMED_OUT = "timed_out"
    # Submitted on-chain but never written to the transfers table
    UNTRACKED = "untracked"
    NOT_ELIGIBLE = "not_eligible"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    ERROR = "error"


class TransferStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Post:
    id: str
    text: str
    author_handle: Optional[str] = None
    author_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerEvent:
    direction: Direction
    amount: Decimal
    currency: str
    counterparty_handle: str
    chain_tx_id: str
    timestamp: str
    origin_reference: str = ""


@dataclass(frozen=True)
class PendingClaim:
    amount: Decimal
    currency: str
    origin_reference: str
    sender: str
    created_at: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.origin_reference, self.sender.lower())


@dataclass
class Account:
    handle: str
    external_id: str
    public_address: str = ""
    secret: Optional[str] = None
    custody_mode: CustodyMode = CustodyMode.CUSTODIAL
    history: List[LedgerEvent] = field(default_factory=list)
    pending_claims: List[PendingClaim] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.external_id.startswith(PLACEHOLDER_PREFIX)

    @property
    def can_spend(self) -> bool:
        """True when the bot holds this account's spending key."""
        return (
            self.custody_mode == CustodyMode.CUSTODIAL
            and bool(self.secret)
            and bool(self.public_address)
        )

    @property
    def is_fundable(self) -> bool:
        return bool(self.public_address)

    def find_claim(self, origin_reference: str, sender: str) -> Optional[PendingClaim]:
        key = (origin_reference, sender.lower())
        for claim in self.pending_claims:
            if claim.key == key:
                return claim
        return None


@dataclass(frozen=True)
class TipIntent:
    sender_handle: str
    recipient_handle: str
    amount: Decimal
    currency: str
    origin_reference: str


@dataclass(frozen=True)
class BatchKey:
    sender: str
    recipient: str
    currency: str


@dataclass
class Batch:
    sender_handle: str
    recipient_handle: str
    currency: str
    intents: List[TipIntent] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return sum((i.amount for i in self.intents), Decimal("0"))

    @property
    def origin_references(self) -> List[str]:
        return [i.origin_reference for i in self.intents]


@dataclass(frozen=True)
class ExecutionResult:
    outcome: Outcome
    chain_tx_id: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.CONFIRMED


@dataclass(frozen=True)
class TransferRecord:
    chain_tx_id: str
    sender: str
    recipient: str
    amount: Decimal
    currency: str
    origin_references: Tuple[str, ...]
    status: TransferStatus
    submitted_at_utc: str
    resolved_at_utc: Optional[str] = None
