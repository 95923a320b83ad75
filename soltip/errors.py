from __future__ import annotations


class SoltipError(RuntimeError):
    """Base class for every failure the tipping pipeline raises on purpose."""


class StorageFailure(SoltipError):
    pass


class AccountRace(StorageFailure):
    """Another writer created the same handle first. Re-read instead of failing."""

    def __init__(self, handle: str):
        super().__init__(f"account {handle} was created concurrently")
        self.handle = handle


class DecryptionFailure(SoltipError):
    pass


class InsufficientFunds(SoltipError):
    def __init__(self, address: str, balance_lamports: int, required_lamports: int):
        super().__init__(
            f"insufficient funds in {address}: have {balance_lamports} lamports, "
            f"need {required_lamports}"
        )
        self.address = address
        self.balance_lamports = balance_lamports
        self.required_lamports = required_lamports


class ChainError(SoltipError):
    """RPC or CLI failure talking to the chain."""


class ChainRejected(ChainError):
    def __init__(self, chain_tx_id: str, reason: str = ""):
        super().__init__(f"transaction {chain_tx_id} failed on-chain: {reason or 'unknown error'}")
        self.chain_tx_id = chain_tx_id
        self.reason = reason


class TransferTimedOut(ChainError):
    def __init__(self, chain_tx_id: str, waited_s: float):
        super().__init__(f"transaction {chain_tx_id} not confirmed after {waited_s:.1f}s")
        self.chain_tx_id = chain_tx_id
        self.waited_s = waited_s


class ClaimNotFound(SoltipError):
    def __init__(self, handle: str, origin_reference: str, sender: str):
        super().__init__(f"no pending claim for {handle} from {sender} (post {origin_reference})")
        self.handle = handle
        self.origin_reference = origin_reference
        self.sender = sender


class RecipientNotFundable(SoltipError):
    pass


class ClaimInFlight(SoltipError):
    """The claim is covered by a transfer whose outcome is not known yet."""


class CycleInProgress(SoltipError):
    pass


class XAPIError(SoltipError):
    pass
