from __future__ import annotations

from typing import Dict, Iterable, Set, Tuple

from soltip.models import Batch, BatchKey, TipIntent
from soltip.utils import handle_key


def batch_key(intent: TipIntent) -> BatchKey:
    return BatchKey(
        sender=handle_key(intent.sender_handle),
        recipient=handle_key(intent.recipient_handle),
        currency=intent.currency.upper(),
    )


def aggregate(intents: Iterable[TipIntent]) -> Dict[BatchKey, Batch]:
    """
    Group tip intents into one batch per (sender, recipient, currency).

    Dict order follows the first intent of each batch; members keep their
    input order. The same post seen twice for the same pair counts once.
    """
    batches: Dict[BatchKey, Batch] = {}
    seen: Set[Tuple[BatchKey, str]] = set()

    for intent in intents:
        key = batch_key(intent)
        dedup = (key, intent.origin_reference)
        if intent.origin_reference and dedup in seen:
            continue
        seen.add(dedup)

        batch = batches.get(key)
        if batch is None:
            batch = Batch(
                sender_handle=intent.sender_handle,
                recipient_handle=intent.recipient_handle,
                currency=key.currency,
            )
            batches[key] = batch
        batch.intents.append(intent)

    return batches
