from __future__ import annotations

from decimal import Decimal

import pytest

from soltip.chain import ConfirmationStatus
from soltip.claims import ingest_tip
from soltip.errors import ClaimInFlight, ClaimNotFound, RecipientNotFundable
from soltip.models import Account, Batch, Direction, TipIntent


def _batch(sender, recipient, amount="0.1", ref="500", currency="SOL"):
    intent = TipIntent(
        sender_handle=sender,
        recipient_handle=recipient,
        amount=Decimal(amount),
        currency=currency,
        origin_reference=ref,
    )
    return Batch(sender_handle=sender, recipient_handle=recipient, currency=currency, intents=[intent])


@pytest.fixture
def bob(resolver):
    return resolver.ensure_custodial_account("@bob")


def test_record_pending_is_idempotent(claims, store, bob):
    """Test 1: the same post from the same sender is recorded once."""
    batch = _batch("@alice", "@bob")
    assert claims.record_pending(bob, batch) == 1
    assert claims.record_pending(bob, batch) == 0

    reloaded = store.get_account("@bob")
    assert claims.record_pending(reloaded, batch) == 0
    assert len(store.pending_claims("@bob")) == 1
    assert len(bob.pending_claims) == 1


def test_list_pending(claims, bob):
    claims.record_pending(bob, _batch("@alice", "@bob", "0.1", "1"))
    claims.record_pending(bob, _batch("@carol", "@bob", "2", "2", currency="USDC"))
    pending = claims.list_pending("bob")
    assert [(c.origin_reference, c.sender, c.amount, c.currency) for c in pending] == [
        ("1", "@alice", Decimal("0.1"), "SOL"),
        ("2", "@carol", Decimal("2"), "USDC"),
    ]


def test_resolve_claim_credits_once(claims, store, bob):
    """Test 2: resolving turns the claim into one credit and removes it."""
    claims.record_pending(bob, _batch("@alice", "@bob", "0.4"))
    event = claims.resolve_claim(bob, "500", "alice")

    assert event.direction == Direction.CREDIT
    assert event.amount == Decimal("0.4")
    assert event.counterparty_handle == "@alice"
    assert event.chain_tx_id.startswith("claim-")
    assert store.pending_claims("@bob") == []
    assert store.history("@bob") == [event]
    assert bob.pending_claims == []

    with pytest.raises(ClaimNotFound):
        claims.resolve_claim(bob, "500", "@alice")


def test_unknown_claim(claims, bob):
    with pytest.raises(ClaimNotFound):
        claims.resolve_claim(bob, "999", "@nobody")


def test_recipient_needs_an_address(claims, store):
    bare = Account(handle="@ghost", external_id="5")
    store.insert_account(bare)
    with pytest.raises(RecipientNotFundable):
        claims.resolve_claim(bare, "500", "@alice")


def test_claim_blocked_while_transfer_unresolved(claims, executor, resolver, chain, store, bob):
    """Test 3: a timed-out transfer keeps its claims locked until reconcile."""
    alice = resolver.ensure_custodial_account("@alice", external_id="1")
    chain.balances[alice.public_address] = 10**9
    chain.default_status = ConfirmationStatus.PENDING

    batch = _batch("@alice", "@bob")
    result = executor.execute(batch, alice, bob)
    claims.record_pending(bob, batch)

    with pytest.raises(ClaimInFlight):
        claims.resolve_claim(bob, "500", "@alice")
    assert len(store.pending_claims("@bob")) == 1
    assert result.chain_tx_id == "sig1"


def test_clear_for_batch(claims, store, bob):
    batch = _batch("@alice", "@bob")
    claims.record_pending(bob, batch)
    assert claims.clear_for_batch(bob, batch) == 1
    assert store.pending_claims("@bob") == []
    assert bob.pending_claims == []


def test_ingest_creates_recipient_and_claim(resolver, claims, store):
    """Test 4: a tip recorded without a mention provisions the recipient and owes it a claim."""
    intent = TipIntent("@alice", "@newbie", Decimal("0.25"), "SOL", "ext-1")
    account, added = ingest_tip(resolver, claims, intent)

    assert added == 1
    assert account.handle == "@newbie"
    assert account.is_placeholder
    assert account.public_address
    assert [(c.origin_reference, c.sender, c.amount) for c in store.pending_claims("@newbie")] == [
        ("ext-1", "@alice", Decimal("0.25"))
    ]

    again, added_again = ingest_tip(resolver, claims, intent)
    assert added_again == 0
    assert again.public_address == account.public_address


@pytest.mark.parametrize(
    "intent",
    [
        TipIntent("@alice", "@bob", Decimal("0"), "SOL", "1"),
        TipIntent("@alice", "@bob", Decimal("0.0000000001"), "SOL", "1"),
        TipIntent("@alice", "@bob", Decimal("1"), "DOGE", "1"),
        TipIntent("@alice", "@bob", Decimal("1"), "SOL", ""),
        TipIntent("@alice", "@Alice", Decimal("1"), "SOL", "1"),
    ],
)
def test_ingest_rejects_bad_tips(resolver, claims, store, intent):
    with pytest.raises(ValueError):
        ingest_tip(resolver, claims, intent)
    assert store.get_account("@bob") is None
