from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from soltip.solana_payer import SolanaCLIPayer
from soltip.solana_rpc import SolanaRPC
from soltip.utils import lamports_to_sol
from soltip.wallet import Keypair

logger = logging.getLogger("soltip.chain")


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    PENDING = "pending"


class Chain(Protocol):
    def get_balance(self, address: str) -> int:
        """Balance in lamports."""

    def submit_transfer(self, keypair: Keypair, to_address: str, lamports: int) -> str:
        """Submit one transfer and return its transaction id without waiting."""

    def get_confirmation_status(self, tx_id: str) -> ConfirmationStatus:
        ...


@dataclass(frozen=True)
class SolanaChain:
    rpc: SolanaRPC
    payer: SolanaCLIPayer

    @classmethod
    def from_url(cls, rpc_url: str) -> "SolanaChain":
        return cls(rpc=SolanaRPC(url=rpc_url), payer=SolanaCLIPayer(rpc_url=rpc_url))

    def get_balance(self, address: str) -> int:
        return self.rpc.get_balance_lamports(address)

    def submit_transfer(self, keypair: Keypair, to_address: str, lamports: int) -> str:
        sig = self.payer.submit_transfer(keypair, to_address, lamports_to_sol(lamports))
        logger.info("submitted %d lamports %s -> %s: %s", lamports, keypair.address, to_address, sig)
        return sig

    def get_confirmation_status(self, tx_id: str) -> ConfirmationStatus:
        status = self.rpc.get_signature_status(tx_id)
        if status is None:
            return ConfirmationStatus.PENDING
        if status.get("err"):
            logger.warning("transaction %s failed on-chain: %s", tx_id, status["err"])
            return ConfirmationStatus.REJECTED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return ConfirmationStatus.CONFIRMED
        return ConfirmationStatus.PENDING
