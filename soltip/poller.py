from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol

from soltip.accounts import AccountResolver
from soltip.aggregator import aggregate
from soltip.claims import PendingClaimLedger
from soltip.errors import CycleInProgress, StorageFailure, XAPIError
from soltip.executor import TransferExecutor
from soltip.models import Batch, ExecutionResult, Outcome, Post, TipIntent
from soltip.parser import TipCommandParser
from soltip.store import AccountStore
from soltip.utils import format_amount
from soltip.x_api import post_sort_key

logger = logging.getLogger("soltip.poller")


class SocialClient(Protocol):
    def search_mentions(self, query: str, since_id: Optional[str] = None) -> List[Post]:
        ...

    def post_tweet(self, text: str, reply_to_id: Optional[str] = None) -> Optional[str]:
        ...


class PollState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    AGGREGATING = "aggregating"
    PROCESSING = "per_batch_processing"
    REPLYING = "replying"


@dataclass
class BatchOutcome:
    batch: Batch
    result: ExecutionResult
    claims_recorded: int = 0
    stored: bool = True


@dataclass
class CycleReport:
    fetched: int = 0
    intents: int = 0
    cursor: Optional[str] = None
    batches: List[BatchOutcome] = field(default_factory=list)
    replies_posted: int = 0
    replies_failed: int = 0
    fetch_error: Optional[str] = None

    @property
    def confirmed(self) -> int:
        return sum(1 for b in self.batches if b.result.ok)

    @property
    def deferred(self) -> int:
        return sum(1 for b in self.batches if not b.result.ok and b.stored)


class MentionPoller:
    """
    One polling cycle at a time: fetch mentions since the stored cursor,
    parse tip commands, batch them, send or defer each batch, reply.

    The cursor moves to the newest fetched post before any batch is handled,
    so a crash never replays a spend; pending-claim insertion is idempotent
    for the mentions that are seen again anyway.
    """

    def __init__(
        self,
        social: SocialClient,
        store: AccountStore,
        resolver: AccountResolver,
        executor: TransferExecutor,
        claims: PendingClaimLedger,
        parser: TipCommandParser,
        query: str,
        explorer_tx_url: str = "https://solscan.io/tx/{signature}",
        dry_run: bool = False,
    ):
        self.social = social
        self.store = store
        self.resolver = resolver
        self.executor = executor
        self.claims = claims
        self.parser = parser
        self.query = query
        self.explorer_tx_url = explorer_tx_url
        self.dry_run = dry_run
        self._lock = threading.Lock()
        self._state = PollState.IDLE

    @property
    def state(self) -> PollState:
        return self._state

    def run_once(self) -> CycleReport:
        if not self._lock.acquire(blocking=False):
            raise CycleInProgress("a poll cycle is already running")
        try:
            return self._cycle()
        finally:
            self._state = PollState.IDLE
            self._lock.release()

    def run_forever(
        self,
        interval_s: float,
        max_cycles: Optional[int] = None,
        before_cycle: Optional[Callable[[], object]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Run cycles back to back, `interval_s` apart. Returns the number of cycles run."""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            started = time.monotonic()
            try:
                if before_cycle is not None:
                    before_cycle()
                report = self.run_once()
                logger.info(
                    "cycle done: %d mentions, %d tips, %d confirmed, %d deferred",
                    report.fetched,
                    report.intents,
                    report.confirmed,
                    report.deferred,
                )
            except CycleInProgress:
                raise
            except Exception:
                logger.exception("poll cycle failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            sleep(max(0.0, interval_s - (time.monotonic() - started)))
        return cycles

    # --- cycle --------------------------------------------------------------

    def _cycle(self) -> CycleReport:
        report = CycleReport()

        self._state = PollState.FETCHING
        since_id = self.store.get_cursor()
        try:
            posts = self.social.search_mentions(self.query, since_id=since_id)
        except XAPIError as e:
            logger.error("fetching mentions failed: %s", e)
            report.fetch_error = str(e)
            report.cursor = since_id
            return report
        report.fetched = len(posts)
        report.cursor = since_id
        if not posts:
            return report

        newest = max(posts, key=lambda p: post_sort_key(p.id)).id
        if since_id is None or post_sort_key(newest) > post_sort_key(since_id):
            # Not persisting the cursor would re-run these spends next cycle
            self.store.set_cursor(newest)
            report.cursor = newest

        self._state = PollState.PARSING
        intents = self._parse(posts)
        report.intents = len(intents)

        self._state = PollState.AGGREGATING
        batches = aggregate(intents)

        self._state = PollState.PROCESSING
        for batch in batches.values():
            report.batches.append(self._process(batch))

        self._state = PollState.REPLYING
        for outcome in report.batches:
            for intent in outcome.batch.intents:
                if self._reply(intent, outcome):
                    report.replies_posted += 1
                else:
                    report.replies_failed += 1
        return report

    def _parse(self, posts: List[Post]) -> List[TipIntent]:
        intents: List[TipIntent] = []
        for post in posts:
            if not post.author_handle:
                logger.debug("post %s has no author handle, skipping", post.id)
                continue
            intent = self.parser.parse(post.text, sender_handle=post.author_handle, origin_reference=post.id)
            if intent is not None:
                intents.append(intent)
        return intents

    def _process(self, batch: Batch) -> BatchOutcome:
        try:
            recipient = self.resolver.ensure_custodial_account(batch.recipient_handle)
        except (StorageFailure, ValueError) as e:
            logger.error("cannot resolve recipient %s: %s", batch.recipient_handle, e)
            return BatchOutcome(batch, ExecutionResult(Outcome.ERROR, detail=str(e)), stored=False)

        try:
            # Senders are never provisioned here; only an existing custodial wallet can pay
            sender = self.resolver.lookup(batch.sender_handle)
            if sender is None or not sender.can_spend:
                result = ExecutionResult(
                    Outcome.NOT_ELIGIBLE, detail=f"{batch.sender_handle} has no custodial wallet"
                )
            else:
                result = self.executor.execute(batch, sender, recipient)
        except Exception as e:
            logger.exception("executing batch %s -> %s failed", batch.sender_handle, batch.recipient_handle)
            result = ExecutionResult(Outcome.ERROR, detail=str(e))

        if result.ok:
            return BatchOutcome(batch, result)
        if result.outcome == Outcome.UNTRACKED:
            # The spend may still land; a claim would pay the tip twice
            return BatchOutcome(batch, result)

        try:
            recorded = self.claims.record_pending(recipient, batch)
        except StorageFailure as e:
            logger.error(
                "could not record pending claims for %s from %s: %s",
                batch.recipient_handle,
                batch.sender_handle,
                e,
            )
            return BatchOutcome(batch, result, stored=False)
        return BatchOutcome(batch, result, claims_recorded=recorded)

    # --- replies ------------------------------------------------------------

    def reply_text(self, intent: TipIntent, outcome: BatchOutcome) -> str:
        amount = f"{format_amount(intent.amount)} {intent.currency}"
        recipient = intent.recipient_handle
        sender = intent.sender_handle
        result = outcome.result
        if not outcome.stored:
            return f"{sender} sorry, your tip of {amount} to {recipient} could not be processed. Please try again."
        if result.ok and result.chain_tx_id:
            link = self.explorer_tx_url.format(signature=result.chain_tx_id)
            return f"{recipient} ✅ tip sent: {amount} from {sender}. Tx: {link}"
        if result.outcome in (Outcome.TIMED_OUT, Outcome.UNTRACKED) and result.chain_tx_id:
            link = self.explorer_tx_url.format(signature=result.chain_tx_id)
            return (
                f"{recipient} your tip of {amount} from {sender} was submitted and is awaiting "
                f"confirmation. Tx: {link}"
            )
        return f"{recipient} a tip of {amount} from {sender} has been recorded for you, sign up and claim."

    def _reply(self, intent: TipIntent, outcome: BatchOutcome) -> bool:
        text = self.reply_text(intent, outcome)
        if self.dry_run:
            logger.info("[dry run] reply to %s: %s", intent.origin_reference, text)
            return True
        try:
            reply_id = self.social.post_tweet(text, reply_to_id=intent.origin_reference)
        except Exception as e:
            logger.error("reply to %s failed: %s", intent.origin_reference, e)
            return False
        if reply_id is None:
            logger.warning("reply to %s was not posted", intent.origin_reference)
            return False
        return True
