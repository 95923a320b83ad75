from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from soltip.chain import ConfirmationStatus
from soltip.errors import DecryptionFailure, InsufficientFunds, StorageFailure
from soltip.models import Batch, Direction, Outcome, TipIntent, TransferStatus
from soltip.store import AccountStore
from soltip.wallet import generate_keypair

ONE_SOL = 1_000_000_000


def _batch(sender, recipient, *amounts, currency="SOL"):
    intents = [
        TipIntent(
            sender_handle=sender,
            recipient_handle=recipient,
            amount=Decimal(a),
            currency=currency,
            origin_reference=str(100 + i),
        )
        for i, a in enumerate(amounts)
    ]
    return Batch(sender_handle=sender, recipient_handle=recipient, currency=currency, intents=intents)


@pytest.fixture
def alice(resolver, chain):
    account = resolver.ensure_custodial_account("@alice", external_id="1")
    chain.balances[account.public_address] = 2 * ONE_SOL
    return account


@pytest.fixture
def bob(resolver):
    return resolver.ensure_custodial_account("@bob")


def test_confirmed_transfer_books_credit_and_debit(executor, chain, store, claims, alice, bob):
    """Test 1: a confirmed batch is one submission, one credit, one debit."""
    batch = _batch("@alice", "@bob", "0.3", "0.2")
    claims.record_pending(bob, batch)

    result = executor.execute(batch, alice, bob)

    assert result.outcome == Outcome.CONFIRMED
    assert chain.submissions == [(alice.public_address, bob.public_address, 500_000_000)]

    credits = store.history("@bob")
    debits = store.history("@alice")
    assert [(e.direction, e.amount, e.chain_tx_id) for e in credits] == [
        (Direction.CREDIT, Decimal("0.5"), result.chain_tx_id)
    ]
    assert [(e.direction, e.amount) for e in debits] == [(Direction.DEBIT, Decimal("0.5"))]
    assert store.pending_claims("@bob") == []
    assert bob.pending_claims == []
    assert store.get_transfer(result.chain_tx_id).status == TransferStatus.CONFIRMED


def test_insufficient_funds_never_submits(executor, chain, store, alice, bob):
    """Test 2: the balance must cover amount plus fee margin."""
    chain.balances[alice.public_address] = ONE_SOL
    result = executor.execute(_batch("@alice", "@bob", "1"), alice, bob)
    assert result.outcome == Outcome.INSUFFICIENT_FUNDS
    assert chain.submissions == []
    assert store.history("@alice") == []


def test_check_funds_raises(executor, chain, alice):
    chain.balances[alice.public_address] = 1000
    with pytest.raises(InsufficientFunds) as exc:
        executor.check_funds(alice.public_address, 1000)
    assert exc.value.required_lamports == 6000


def test_rejected_transfer_books_nothing(executor, chain, store, alice, bob):
    chain.default_status = ConfirmationStatus.REJECTED
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.outcome == Outcome.CHAIN_REJECTED
    assert result.chain_tx_id == "sig1"
    assert store.history("@bob") == []
    assert store.get_transfer("sig1").status == TransferStatus.REJECTED


def test_confirmation_wait_is_bounded(executor, chain, clock, store, alice, bob):
    """Test 3: a transfer that never confirms times out after timeout_s."""
    chain.default_status = ConfirmationStatus.PENDING
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.outcome == Outcome.TIMED_OUT
    assert result.chain_tx_id == "sig1"
    assert clock.now == pytest.approx(10.0)
    assert len(chain.submissions) == 1
    assert store.history("@bob") == []
    assert store.get_transfer("sig1").status == TransferStatus.TIMED_OUT


def test_pending_then_confirmed(executor, chain, clock, alice, bob):
    chain.script("sig1", ConfirmationStatus.PENDING, ConfirmationStatus.PENDING, ConfirmationStatus.CONFIRMED)
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.ok
    assert clock.sleeps == [1.5, 1.5]


def test_undecryptable_key(executor, chain, alice, bob):
    broken = replace(alice, secret="not-a-fernet-token")
    result = executor.execute(_batch("@alice", "@bob", "0.1"), broken, bob)
    assert result.outcome == Outcome.DECRYPTION_FAILED
    assert chain.submissions == []


def test_key_must_match_address(executor, vault, alice):
    other = generate_keypair()
    mismatched = replace(alice, secret=vault.encrypt_secret(other.secret_key))
    with pytest.raises(DecryptionFailure):
        executor.unlock(mismatched)


def test_unsupported_currency_is_deferred(executor, chain, alice, bob):
    result = executor.execute(_batch("@alice", "@bob", "5", currency="USDC"), alice, bob)
    assert result.outcome == Outcome.UNSUPPORTED_CURRENCY
    assert chain.submissions == []


def test_sender_without_custodial_key(executor, resolver, chain, bob):
    erin = resolver.register_self_managed("@erin", "900", generate_keypair().address)
    result = executor.execute(_batch("@erin", "@bob", "0.1"), erin, bob)
    assert result.outcome == Outcome.NOT_ELIGIBLE
    assert chain.submissions == []


def test_submission_failure(executor, chain, alice, bob):
    chain.fail_submit = True
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.outcome == Outcome.ERROR
    assert result.chain_tx_id is None


def test_withdraw(executor, chain, store, alice):
    to = generate_keypair().address
    result = executor.withdraw(alice, to, Decimal("0.25"))
    assert result.ok
    assert chain.submissions == [(alice.public_address, to, 250_000_000)]
    assert [(e.direction, e.counterparty_handle) for e in store.history("@alice")] == [(Direction.DEBIT, to)]


def test_withdraw_rejects_bad_address(executor, chain, alice):
    result = executor.withdraw(alice, "nope", Decimal("0.1"))
    assert result.outcome == Outcome.ERROR
    assert chain.submissions == []


def test_sub_lamport_amount_is_refused(executor, chain, store, alice, bob):
    result = executor.execute(_batch("@alice", "@bob", "0.0000000015"), alice, bob)
    assert result.outcome == Outcome.ERROR
    assert chain.submissions == []
    assert store.history("@bob") == []


def test_unrecorded_submission_is_untracked(executor, chain, store, alice, bob, monkeypatch):
    """Test 4: a timed-out transfer with no transfers row is reported as untracked."""

    def fail(self, record):
        raise StorageFailure("disk I/O error")

    monkeypatch.setattr(AccountStore, "record_transfer", fail)
    chain.default_status = ConfirmationStatus.PENDING
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.outcome == Outcome.UNTRACKED
    assert result.chain_tx_id == "sig1"
    assert store.get_transfer("sig1") is None


def test_unrecorded_submission_still_books_when_confirmed(executor, chain, store, alice, bob, monkeypatch):
    def fail(self, record):
        raise StorageFailure("disk I/O error")

    monkeypatch.setattr(AccountStore, "record_transfer", fail)
    result = executor.execute(_batch("@alice", "@bob", "0.1"), alice, bob)
    assert result.ok
    assert len(store.history("@bob")) == 1


def test_balance_of(executor, chain, alice):
    chain.balances[alice.public_address] = 1_500_000_000
    assert executor.balance_of(alice.public_address) == Decimal("1.5")
    assert executor.balance_of(generate_keypair().address) == Decimal("0")
