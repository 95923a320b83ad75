from __future__ import annotations

import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from soltip.accounts import AccountResolver
from soltip.chain import ConfirmationStatus
from soltip.claims import PendingClaimLedger
from soltip.crypto import KeyVault
from soltip.db import DB, init_db
from soltip.errors import ChainError
from soltip.executor import TransferExecutor
from soltip.models import Post
from soltip.parser import TipCommandParser
from soltip.poller import MentionPoller
from soltip.store import AccountStore
from soltip.wallet import Keypair

BOT = "Pourboireonsol"
TEST_SECRET = "test-process-secret-0123456789abcdef"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeChain:
    """In-memory chain: balances by address, scripted confirmation statuses."""

    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}
        self.submissions: List[Tuple[str, str, int]] = []
        self.scripts: Dict[str, List[ConfirmationStatus]] = {}
        self.default_status = ConfirmationStatus.CONFIRMED
        self.fail_submit = False
        self._ids = itertools.count(1)

    def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    def submit_transfer(self, keypair: Keypair, to_address: str, lamports: int) -> str:
        if self.fail_submit:
            raise ChainError("node unavailable")
        self.submissions.append((keypair.address, to_address, lamports))
        return f"sig{next(self._ids)}"

    def script(self, tx_id: str, *statuses: ConfirmationStatus) -> None:
        self.scripts[tx_id] = list(statuses)

    def get_confirmation_status(self, tx_id: str) -> ConfirmationStatus:
        queue = self.scripts.get(tx_id)
        if queue:
            return queue.pop(0) if len(queue) > 1 else queue[0]
        return self.default_status


class FakeSocial:
    def __init__(self, posts: Optional[List[Post]] = None) -> None:
        self.posts: List[Post] = list(posts or [])
        self.queries: List[Tuple[str, Optional[str]]] = []
        self.replies: List[Tuple[str, Optional[str]]] = []
        self.fail_replies = False

    def search_mentions(self, query: str, since_id: Optional[str] = None) -> List[Post]:
        self.queries.append((query, since_id))
        if since_id is None:
            return list(self.posts)
        return [p for p in self.posts if int(p.id) > int(since_id)]

    def post_tweet(self, text: str, reply_to_id: Optional[str] = None) -> Optional[str]:
        if self.fail_replies:
            return None
        self.replies.append((text, reply_to_id))
        return f"reply{len(self.replies)}"


@pytest.fixture
def store(tmp_path) -> AccountStore:
    db = DB(str(tmp_path / "soltip.sqlite3"))
    init_db(db)
    return AccountStore(db)


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault(TEST_SECRET)


@pytest.fixture
def resolver(store, vault) -> AccountResolver:
    return AccountResolver(store, vault)


@pytest.fixture
def claims(store) -> PendingClaimLedger:
    return PendingClaimLedger(store)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor(store, vault, chain, clock) -> TransferExecutor:
    return TransferExecutor(
        store,
        vault,
        chain,
        fee_margin_lamports=5000,
        poll_interval_s=1.5,
        timeout_s=10.0,
        sleep=clock.sleep,
        clock=clock.time,
    )


@pytest.fixture
def parser() -> TipCommandParser:
    return TipCommandParser(bot_handle=BOT)


@pytest.fixture
def social() -> FakeSocial:
    return FakeSocial()


@pytest.fixture
def poller(social, store, resolver, executor, claims, parser) -> MentionPoller:
    return MentionPoller(
        social=social,
        store=store,
        resolver=resolver,
        executor=executor,
        claims=claims,
        parser=parser,
        query=f"@{BOT} -is:retweet",
    )
