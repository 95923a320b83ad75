from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, List, Optional

from soltip.errors import ChainError


@dataclass(frozen=True)
class SolanaRPC:
    url: str
    timeout_s: int = 20
    commitment: str = "confirmed"

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                result = json.loads(resp.read().decode("utf-8"))
        except urllib.error.URLError as e:
            raise ChainError(f"Solana RPC request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise ChainError(f"Solana RPC invalid JSON response: {e}") from e
        if "error" in result:
            raise ChainError(f"Solana RPC error: {result['error']}")
        if "result" not in result:
            raise ChainError(f"Solana RPC missing result: {result}")
        return result["result"]

    def get_balance_lamports(self, pubkey: str) -> int:
        """Read SOL balance (in lamports) for a given pubkey."""
        result = self._call("getBalance", [pubkey, {"commitment": self.commitment}])
        balance = result.get("value") if isinstance(result, dict) else None
        if balance is None:
            raise ChainError(f"Solana RPC missing balance value: {result}")
        return int(balance)

    def get_signature_status(self, signature: str) -> Optional[dict]:
        """
        Status of one transaction signature, or None if the cluster has not seen it yet.

        Returned dict carries 'err' (None on success) and 'confirmationStatus'
        ('processed', 'confirmed' or 'finalized').
        """
        result = self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        try:
            values = result["value"]
        except (KeyError, TypeError) as e:
            raise ChainError(f"Solana RPC invalid response format: {result}") from e
        if not values:
            return None
        return values[0]
