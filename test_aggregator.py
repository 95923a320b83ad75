from __future__ import annotations

from decimal import Decimal

from soltip.aggregator import aggregate, batch_key
from soltip.models import BatchKey, TipIntent


def _tip(sender, recipient, amount, ref, currency="SOL"):
    return TipIntent(
        sender_handle=sender,
        recipient_handle=recipient,
        amount=Decimal(amount),
        currency=currency,
        origin_reference=ref,
    )


def test_groups_by_sender_and_recipient():
    """Test 1: A->B 1, A->B 2, A->C 1 gives two batches of 3 and 1."""
    batches = aggregate(
        [
            _tip("@A", "@B", "1", "10"),
            _tip("@A", "@B", "2", "11"),
            _tip("@A", "@C", "1", "12"),
        ]
    )
    assert len(batches) == 2
    ab = batches[BatchKey("@a", "@b", "SOL")]
    ac = batches[BatchKey("@a", "@c", "SOL")]
    assert ab.total_amount == Decimal("3")
    assert ab.origin_references == ["10", "11"]
    assert ac.total_amount == Decimal("1")


def test_handles_compare_case_insensitively():
    batches = aggregate([_tip("@Alice", "@Bob", "1", "1"), _tip("@alice", "@BOB", "1", "2")])
    assert len(batches) == 1
    batch = next(iter(batches.values()))
    assert batch.sender_handle == "@Alice"
    assert batch.recipient_handle == "@Bob"
    assert batch.total_amount == Decimal("2")


def test_currencies_are_not_mixed():
    batches = aggregate([_tip("@a", "@b", "1", "1"), _tip("@a", "@b", "5", "2", currency="USDC")])
    assert len(batches) == 2
    assert batches[BatchKey("@a", "@b", "USDC")].total_amount == Decimal("5")


def test_sum_is_exact():
    batches = aggregate([_tip("@a", "@b", "0.3", "1"), _tip("@a", "@b", "0.2", "2")])
    assert next(iter(batches.values())).total_amount == Decimal("0.5")


def test_same_post_counts_once():
    batches = aggregate([_tip("@a", "@b", "1", "1"), _tip("@a", "@b", "1", "1")])
    assert next(iter(batches.values())).total_amount == Decimal("1")


def test_order_follows_first_intent():
    batches = aggregate([_tip("@a", "@c", "1", "1"), _tip("@a", "@b", "1", "2"), _tip("@a", "@c", "1", "3")])
    assert [b.recipient_handle for b in batches.values()] == ["@c", "@b"]


def test_empty_input():
    assert aggregate([]) == {}


def test_batch_key_normalizes():
    assert batch_key(_tip("Alice", "@Bob", "1", "1", currency="sol")) == BatchKey("@alice", "@bob", "SOL")
