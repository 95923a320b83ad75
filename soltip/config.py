from __future__ import annotations

from dataclasses import dataclass
from dotenv import load_dotenv
import os
from typing import Optional


def _getenv(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise ValueError(f"Missing required env var: {name}")
    return val


def _getenv_bool(name: str, default: str = "false") -> bool:
    return _getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


def _getenv_float(name: str, default: str) -> float:
    return float(_getenv(name, default))


def _getenv_int(name: str, default: str) -> int:
    return int(_getenv(name, default))


# Solana RPC URL (mainnet)
SOLANA_RPC_URL = "https://api.mainnet-beta.solana.com"

EXPLORER_TX_URL = "https://solscan.io/tx/{signature}"

# Fernet key derivation needs a reasonably long process secret
MIN_ENCRYPTION_KEY_LENGTH = 32


def validate_rpc_url(rpc_url: str, allow_devnet: bool = False) -> None:
    """Hard fail if devnet is detected in RPC URL, unless explicitly allowed."""
    if not rpc_url.startswith(("http://", "https://")):
        raise ValueError(f"SOLTIP_RPC_URL must be an http(s) URL, got {rpc_url!r}")
    if "devnet" in rpc_url.lower() and not allow_devnet:
        raise RuntimeError("FATAL: Devnet RPC configured. Set SOLTIP_ALLOW_DEVNET=true to run against it.")


def validate_encryption_key(secret: str) -> None:
    if len(secret) < MIN_ENCRYPTION_KEY_LENGTH:
        raise ValueError(
            f"SOLTIP_ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters "
            "(run 'python -m soltip keygen-secret' to create one)"
        )


@dataclass(frozen=True)
class Settings:
    bot_handle: str
    db_path: str

    x_api_bearer_token: str
    x_user_access_token: str
    max_mentions: int

    rpc_url: str
    explorer_tx_url: str
    encryption_key: str

    fee_margin_lamports: int
    confirm_poll_interval_s: float
    confirm_timeout_s: float
    poll_interval_s: float

    dry_run: bool
    log_level: str

    @property
    def mention_query(self) -> str:
        return f"@{self.bot_handle} -is:retweet"


def load_settings(require_secrets: bool = True) -> Settings:
    load_dotenv()

    bot_handle = _getenv("SOLTIP_BOT_HANDLE", "Pourboireonsol").strip().lstrip("@")
    db_path = _getenv("SOLTIP_DB_PATH", "soltip.sqlite3")

    x_api_bearer_token = _getenv("SOLTIP_X_API_BEARER_TOKEN", "").strip()
    x_user_access_token = _getenv("SOLTIP_X_USER_ACCESS_TOKEN", "").strip()
    max_mentions = _getenv_int("SOLTIP_MAX_MENTIONS", "100")

    allow_devnet = _getenv_bool("SOLTIP_ALLOW_DEVNET", "false")
    rpc_url = _getenv("SOLTIP_RPC_URL", SOLANA_RPC_URL).strip()
    validate_rpc_url(rpc_url, allow_devnet=allow_devnet)
    explorer_tx_url = _getenv("SOLTIP_EXPLORER_TX_URL", EXPLORER_TX_URL)

    encryption_key = _getenv("SOLTIP_ENCRYPTION_KEY", "").strip()
    if require_secrets:
        validate_encryption_key(encryption_key)

    # Roughly one signature fee (5000 lamports) per transfer
    fee_margin_lamports = _getenv_int("SOLTIP_FEE_MARGIN_LAMPORTS", "5000")
    confirm_poll_interval_s = _getenv_float("SOLTIP_CONFIRM_POLL_INTERVAL_S", "1.5")
    confirm_timeout_s = _getenv_float("SOLTIP_CONFIRM_TIMEOUT_S", "60")
    poll_interval_s = _getenv_float("SOLTIP_POLL_INTERVAL_S", "60")

    dry_run = _getenv_bool("SOLTIP_DRY_RUN", "false")
    log_level = _getenv("SOLTIP_LOG_LEVEL", "INFO").strip().upper()

    if fee_margin_lamports < 0:
        raise ValueError("SOLTIP_FEE_MARGIN_LAMPORTS must not be negative")
    if confirm_poll_interval_s <= 0 or confirm_timeout_s <= 0:
        raise ValueError("Confirmation poll interval and timeout must be positive")
    if not 10 <= max_mentions <= 100:
        raise ValueError("SOLTIP_MAX_MENTIONS must be between 10 and 100 (X API limits)")

    return Settings(
        bot_handle=bot_handle,
        db_path=db_path,
        x_api_bearer_token=x_api_bearer_token,
        x_user_access_token=x_user_access_token,
        max_mentions=max_mentions,
        rpc_url=rpc_url,
        explorer_tx_url=explorer_tx_url,
        encryption_key=encryption_key,
        fee_margin_lamports=fee_margin_lamports,
        confirm_poll_interval_s=confirm_poll_interval_s,
        confirm_timeout_s=confirm_timeout_s,
        poll_interval_s=poll_interval_s,
        dry_run=dry_run,
        log_level=log_level,
    )
