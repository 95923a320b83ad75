from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal


LAMPORTS_PER_SOL = 1_000_000_000


def normalize_handle(handle: str) -> str:
    """'bob', '@bob', ' @Bob ' -> '@bob' with display case kept ('@Bob')."""
    h = (handle or "").strip()
    h = h.lstrip("@")
    return f"@{h}" if h else ""


def handle_key(handle: str) -> str:
    """Case-insensitive comparison key for a handle."""
    return normalize_handle(handle).lower()


def same_handle(a: str, b: str) -> bool:
    return handle_key(a) == handle_key(b)


def sol_to_lamports(sol: Decimal) -> int:
    # Decimal keeps 0.3 + 0.2 exact; fractions of a lamport are dropped
    lamports = (Decimal(sol) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN)
    return int(lamports)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / LAMPORTS_PER_SOL


def is_whole_lamports(sol: Decimal) -> bool:
    """False when the amount carries precision below one lamport (0.0000000015)."""
    return lamports_to_sol(sol_to_lamports(sol)) == Decimal(sol)


def format_amount(amount: Decimal) -> str:
    """Drop trailing zeros for replies: Decimal('0.500') -> '0.5'."""
    text = format(Decimal(amount).normalize(), "f")
    return text


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
