from __future__ import annotations

import pytest

from soltip import config
from soltip.config import load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for name in [
        "SOLTIP_BOT_HANDLE",
        "SOLTIP_RPC_URL",
        "SOLTIP_ALLOW_DEVNET",
        "SOLTIP_ENCRYPTION_KEY",
        "SOLTIP_MAX_MENTIONS",
        "SOLTIP_FEE_MARGIN_LAMPORTS",
    ]:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    monkeypatch.setenv("SOLTIP_ENCRYPTION_KEY", "k" * 40)
    s = load_settings()
    assert s.bot_handle == "Pourboireonsol"
    assert s.mention_query == "@Pourboireonsol -is:retweet"
    assert s.fee_margin_lamports == 5000
    assert s.confirm_timeout_s == 60
    assert s.explorer_tx_url.format(signature="abc") == "https://solscan.io/tx/abc"


def test_short_encryption_key_fails(monkeypatch):
    monkeypatch.setenv("SOLTIP_ENCRYPTION_KEY", "short")
    with pytest.raises(ValueError):
        load_settings()
    assert load_settings(require_secrets=False).encryption_key == "short"


def test_devnet_needs_opt_in(monkeypatch):
    monkeypatch.setenv("SOLTIP_RPC_URL", "https://api.devnet.solana.com")
    with pytest.raises(RuntimeError):
        load_settings(require_secrets=False)
    monkeypatch.setenv("SOLTIP_ALLOW_DEVNET", "true")
    assert "devnet" in load_settings(require_secrets=False).rpc_url


def test_mention_limit_bounds(monkeypatch):
    monkeypatch.setenv("SOLTIP_MAX_MENTIONS", "500")
    with pytest.raises(ValueError):
        load_settings(require_secrets=False)


def test_handle_strips_at(monkeypatch):
    monkeypatch.setenv("SOLTIP_BOT_HANDLE", "@MyTipBot")
    assert load_settings(require_secrets=False).bot_handle == "MyTipBot"
