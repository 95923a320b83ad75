from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from soltip.errors import ChainError
from soltip.utils import format_amount
from soltip.wallet import Keypair

logger = logging.getLogger("soltip.solana_payer")


def _parse_signature(stdout: str) -> Optional[str]:
    """Signature from `solana transfer --output json`, or the plain 'Signature:' line."""
    text = stdout.strip()
    if text.startswith("{"):
        try:
            sig = json.loads(text).get("signature")
            if sig:
                return str(sig)
        except ValueError:
            pass
    for line in stdout.splitlines():
        if "Signature:" in line:
            return line.split("Signature:", 1)[1].strip()
    return None


@dataclass(frozen=True)
class SolanaCLIPayer:
    """Submit SOL transfers with the Solana CLI, signing with a custodial keypair."""

    rpc_url: str
    timeout_s: int = 60
    solana_bin: str = "solana"

    def submit_transfer(self, keypair: Keypair, to_wallet: str, sol: Decimal) -> str:
        """
        Send a transfer without waiting for confirmation and return its signature.

        The keypair is written to a private temp file for the CLI and removed
        right after the call.
        """
        fd, keypair_path = tempfile.mkstemp(prefix="soltip-", suffix=".json")
        try:
            os.chmod(keypair_path, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(keypair.to_json_bytes(), f)

            cmd = [
                self.solana_bin,
                "transfer",
                to_wallet,
                format_amount(sol),
                "--from",
                keypair_path,
                "--fee-payer",
                keypair_path,
                "--url",
                self.rpc_url,
                "--allow-unfunded-recipient",
                "--no-wait",
                "--output",
                "json",
            ]
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
            except FileNotFoundError as e:
                raise ChainError(f"{self.solana_bin} CLI not found in PATH") from e
            except subprocess.TimeoutExpired as e:
                raise ChainError(f"solana transfer did not return within {self.timeout_s}s") from e
        finally:
            try:
                os.remove(keypair_path)
            except OSError:
                logger.warning("could not remove temporary keypair file %s", keypair_path)

        if proc.returncode != 0:
            raise ChainError(f"solana transfer failed:\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}")

        sig = _parse_signature(proc.stdout)
        if not sig:
            raise ChainError(f"solana transfer returned no signature:\n{proc.stdout}")
        return sig
