from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS accounts (
  handle TEXT PRIMARY KEY COLLATE NOCASE,
  external_id TEXT NOT NULL,
  public_address TEXT NOT NULL DEFAULT '',
  encrypted_secret TEXT,
  custody_mode TEXT NOT NULL,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  handle TEXT NOT NULL COLLATE NOCASE,
  direction TEXT NOT NULL,
  amount TEXT NOT NULL,
  currency TEXT NOT NULL,
  counterparty_handle TEXT NOT NULL,
  chain_tx_id TEXT NOT NULL,
  origin_reference TEXT NOT NULL DEFAULT '',
  created_at_utc TEXT NOT NULL,
  UNIQUE(handle, direction, chain_tx_id, origin_reference)
);

CREATE TABLE IF NOT EXISTS pending_claims (
  handle TEXT NOT NULL COLLATE NOCASE,
  origin_reference TEXT NOT NULL,
  sender TEXT NOT NULL COLLATE NOCASE,
  amount TEXT NOT NULL,
  currency TEXT NOT NULL,
  created_at_utc TEXT NOT NULL,
  PRIMARY KEY (handle, origin_reference, sender)
);

CREATE TABLE IF NOT EXISTS transfers (
  chain_tx_id TEXT PRIMARY KEY,
  sender TEXT NOT NULL COLLATE NOCASE,
  recipient TEXT NOT NULL COLLATE NOCASE,
  amount TEXT NOT NULL,
  currency TEXT NOT NULL,
  origin_references TEXT NOT NULL,
  status TEXT NOT NULL,
  submitted_at_utc TEXT NOT NULL,
  resolved_at_utc TEXT
);

CREATE TABLE IF NOT EXISTS poll_state (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class DB:
    path: str


@contextmanager
def connect(db: DB) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db.path)
    try:
        conn.row_factory = sqlite3.Row
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db: DB) -> None:
    with connect(db) as conn:
        conn.executescript(SCHEMA)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_ledger_events_handle ON ledger_events(handle, id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status)"
        )


def get_state(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM poll_state WHERE key=?", (key,)).fetchone()
    return str(row["value"]) if row else None


def set_state(conn: sqlite3.Connection, key: str, value: str, now_utc: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO poll_state (key, value, updated_at_utc) VALUES (?,?,?)",
        (key, value, now_utc),
    )
