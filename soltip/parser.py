from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from soltip.models import NATIVE_CURRENCY, SUPPORTED_CURRENCIES, TipIntent
from soltip.utils import is_whole_lamports, normalize_handle, same_handle

_AMOUNT = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]+)?$")
_RECIPIENT = re.compile(r"^@([A-Za-z0-9_]{1,15})$")
# A cashtag or an upper-case ticker right after the amount names a currency we do not support
_FOREIGN_TICKER = re.compile(r"^(\$[A-Za-z]{2,10}|[A-Z]{2,6})$")

_TRAILING_PUNCT = ".,!?;:)]}\"'"


def _clean(token: str) -> str:
    return token.rstrip(_TRAILING_PUNCT)


def _currency(token: str) -> Optional[str]:
    t = token.lstrip("$").upper()
    return t if t in SUPPORTED_CURRENCIES else None


@dataclass(frozen=True)
class TipCommandParser:
    """
    Recognizes `@<bot> tip <amount> [<currency>] @<recipient>` and
    `@<bot> tip @<recipient> <amount> [<currency>]` anywhere in a post.

    Command words and currency are case-insensitive; the recipient keeps the
    case it was written in. Anything else yields None.
    """

    bot_handle: str

    def parse(
        self,
        text: str,
        sender_handle: Optional[str] = None,
        origin_reference: str = "",
    ) -> Optional[TipIntent]:
        tokens = (text or "").split()
        bot = normalize_handle(self.bot_handle).lower()

        for i, token in enumerate(tokens[:-1]):
            if _clean(token).lower() != bot:
                continue
            if _clean(tokens[i + 1]).lower() != "tip":
                continue
            parsed = self._parse_arguments(tokens[i + 2:])
            if parsed is None:
                continue
            amount, currency, recipient = parsed
            if amount <= 0:
                return None
            if sender_handle and same_handle(sender_handle, recipient):
                return None
            if same_handle(recipient, bot):
                return None
            return TipIntent(
                sender_handle=normalize_handle(sender_handle or ""),
                recipient_handle=recipient,
                amount=amount,
                currency=currency,
                origin_reference=origin_reference,
            )
        return None

    def _parse_arguments(self, args: List[str]) -> Optional[Tuple[Decimal, str, str]]:
        if not args:
            return None
        first = _clean(args[0])
        if first.startswith("@"):
            return self._recipient_first(args)
        return self._amount_first(args)

    @staticmethod
    def _amount(args: List[str]) -> Optional[Tuple[Decimal, Optional[str], int]]:
        """(amount, currency, tokens consumed) from the head of args."""
        if not args:
            return None
        m = _AMOUNT.match(_clean(args[0]))
        if not m:
            return None
        amount = Decimal(m.group(1))
        if not is_whole_lamports(amount):
            return None
        if m.group(2):
            currency = _currency(m.group(2))
            if currency is None:
                return None
            return amount, currency, 1
        if len(args) > 1:
            currency = _currency(_clean(args[1]))
            if currency is not None:
                return amount, currency, 2
        return amount, None, 1

    def _amount_first(self, args: List[str]) -> Optional[Tuple[Decimal, str, str]]:
        head = self._amount(args)
        if head is None:
            return None
        amount, currency, used = head
        if len(args) <= used:
            return None
        m = _RECIPIENT.match(_clean(args[used]))
        if not m:
            return None
        return amount, currency or NATIVE_CURRENCY, normalize_handle(m.group(1))

    def _recipient_first(self, args: List[str]) -> Optional[Tuple[Decimal, str, str]]:
        m = _RECIPIENT.match(_clean(args[0]))
        if not m:
            return None
        head = self._amount(args[1:])
        if head is None:
            return None
        amount, currency, used = head
        if currency is None and len(args) > 1 + used:
            if _FOREIGN_TICKER.match(_clean(args[1 + used])):
                return None
        return amount, currency or NATIVE_CURRENCY, normalize_handle(m.group(1))
