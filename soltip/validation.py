from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

# Solana pubkey is Base58 encoded, 32-44 characters
# Base58 alphabet: 123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz
_SOLANA_PUBKEY_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

# X usernames: 1-15 word characters
_HANDLE_PATTERN = re.compile(r"^@?[A-Za-z0-9_]{1,15}$")


def is_valid_solana_pubkey(address: str) -> bool:
    if not address or not isinstance(address, str):
        return False
    return bool(_SOLANA_PUBKEY_PATTERN.match(address.strip()))


def is_valid_handle(handle: str) -> bool:
    if not handle or not isinstance(handle, str):
        return False
    return bool(_HANDLE_PATTERN.match(handle.strip()))


def parse_positive_amount(raw: str) -> Decimal:
    """Parse a user-supplied SOL amount. Raises ValueError when not a positive number."""
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {raw!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Amount must be positive: {raw!r}")
    return amount
