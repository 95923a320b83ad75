from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Optional

from soltip.accounts import AccountResolver
from soltip.chain import SolanaChain
from soltip.claims import PendingClaimLedger, ingest_tip
from soltip.config import Settings, load_settings
from soltip.crypto import KeyVault, generate_process_secret
from soltip.db import DB, init_db
from soltip.errors import SoltipError
from soltip.executor import TransferExecutor
from soltip.models import TipIntent
from soltip.parser import TipCommandParser
from soltip.poller import MentionPoller
from soltip.reconcile import reconcile_transfers
from soltip.store import AccountStore
from soltip.utils import normalize_handle
from soltip.validation import is_valid_solana_pubkey, parse_positive_amount
from soltip.x_api import XAPIClient


@dataclass(frozen=True)
class App:
    settings: Settings
    store: AccountStore
    vault: KeyVault
    chain: SolanaChain
    resolver: AccountResolver
    claims: PendingClaimLedger
    executor: TransferExecutor


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build(s: Settings) -> App:
    db = DB(s.db_path)
    init_db(db)
    store = AccountStore(db)
    vault = KeyVault(s.encryption_key)
    chain = SolanaChain.from_url(s.rpc_url)
    return App(
        settings=s,
        store=store,
        vault=vault,
        chain=chain,
        resolver=AccountResolver(store, vault),
        claims=PendingClaimLedger(store),
        executor=TransferExecutor(
            store,
            vault,
            chain,
            fee_margin_lamports=s.fee_margin_lamports,
            poll_interval_s=s.confirm_poll_interval_s,
            timeout_s=s.confirm_timeout_s,
        ),
    )


def _poller(app: App, dry_run: bool) -> MentionPoller:
    s = app.settings
    client = XAPIClient(
        bearer_token=s.x_api_bearer_token,
        user_access_token=s.x_user_access_token,
        max_results=s.max_mentions,
    )
    return MentionPoller(
        social=client,
        store=app.store,
        resolver=app.resolver,
        executor=app.executor,
        claims=app.claims,
        parser=TipCommandParser(bot_handle=s.bot_handle),
        query=s.mention_query,
        explorer_tx_url=s.explorer_tx_url,
        dry_run=dry_run or s.dry_run,
    )


def cmd_init_db() -> None:
    s = load_settings(require_secrets=False)
    init_db(DB(s.db_path))
    print(f"OK: initialized DB at {s.db_path}")


def cmd_keygen_secret() -> None:
    print(generate_process_secret())
    print("Set this as SOLTIP_ENCRYPTION_KEY. Losing it makes every custodial wallet unrecoverable.")


def cmd_poll_once(dry_run: bool = False) -> None:
    s = load_settings()
    if not s.x_api_bearer_token:
        print("WARNING: SOLTIP_X_API_BEARER_TOKEN not set, skipping poll")
        return
    app = _build(s)
    report = _poller(app, dry_run).run_once()
    if report.fetch_error:
        print(f"WARNING: fetching mentions failed: {report.fetch_error}")
        return
    print(f"Fetched {report.fetched} mentions, {report.intents} tip commands, {len(report.batches)} batches")
    for outcome in report.batches:
        b = outcome.batch
        tx = f" tx {outcome.result.chain_tx_id}" if outcome.result.chain_tx_id else ""
        print(
            f"  {b.sender_handle} -> {b.recipient_handle}: {b.total_amount} {b.currency} "
            f"[{outcome.result.outcome.value}]{tx}"
        )
    print(f"OK: cursor at {report.cursor or '(none)'}; replies posted {report.replies_posted}, failed {report.replies_failed}")


def cmd_poll(interval_s: Optional[float], max_cycles: Optional[int], reconcile: bool, dry_run: bool) -> None:
    s = load_settings()
    if not s.x_api_bearer_token:
        raise SystemExit("FATAL: SOLTIP_X_API_BEARER_TOKEN not set")
    app = _build(s)
    poller = _poller(app, dry_run)
    before = (lambda: reconcile_transfers(app.store, app.chain)) if reconcile else None
    interval = interval_s if interval_s is not None else s.poll_interval_s
    print(f"Polling mentions of @{s.bot_handle} every {interval:.0f}s (Ctrl-C to stop)")
    try:
        cycles = poller.run_forever(interval, max_cycles=max_cycles, before_cycle=before)
    except KeyboardInterrupt:
        print("Stopped")
        return
    print(f"OK: ran {cycles} cycles")


def cmd_reconcile() -> None:
    app = _build(load_settings())
    report = reconcile_transfers(app.store, app.chain)
    print(f"Confirmed late: {len(report.confirmed)}")
    print(f"Rejected: {len(report.rejected)}")
    print(f"Expired: {len(report.expired)}")
    print(f"Still pending: {len(report.still_pending)}")
    if report.errors:
        print(f"WARNING: could not check {len(report.errors)} transfers")


def cmd_ensure_account(handle: str, external_id: Optional[str]) -> None:
    app = _build(load_settings())
    account = app.resolver.ensure_custodial_account(handle, external_id=external_id)
    kind = "placeholder" if account.is_placeholder else "verified"
    print(f"OK: {account.handle} ({kind}, {account.custody_mode.value}) wallet {account.public_address}")


def cmd_signup(handle: str, external_id: str, wallet: Optional[str]) -> None:
    app = _build(load_settings())
    if wallet:
        account = app.resolver.register_self_managed(handle, external_id, wallet)
    else:
        account = app.resolver.ensure_custodial_account(handle, external_id=external_id)
    print(f"OK: {account.handle} signed up, wallet {account.public_address} ({account.custody_mode.value})")
    pending = app.claims.list_pending(account.handle)
    if pending:
        print(f"  {len(pending)} pending claims waiting (run 'python -m soltip pending {account.handle}')")


def cmd_address(handle: str) -> None:
    app = _build(load_settings())
    address = app.resolver.export_address(handle)
    if address is None:
        raise SystemExit(f"No wallet for {normalize_handle(handle)}")
    print(address)


def cmd_balance(target: str) -> None:
    app = _build(load_settings())
    address = target if is_valid_solana_pubkey(target) else app.resolver.export_address(target)
    if address is None:
        raise SystemExit(f"No wallet for {normalize_handle(target)}")
    print(f"{address}: {app.executor.balance_of(address)} SOL")


def cmd_ingest(sender: str, recipient: str, amount: str, currency: str, reference: str) -> None:
    app = _build(load_settings())
    intent = TipIntent(
        sender_handle=normalize_handle(sender),
        recipient_handle=normalize_handle(recipient),
        amount=parse_positive_amount(amount),
        currency=currency.upper(),
        origin_reference=reference,
    )
    account, added = ingest_tip(app.resolver, app.claims, intent)
    if not added:
        print(f"WARNING: tip {reference} from {intent.sender_handle} already recorded for {account.handle}")
        return
    print(f"OK: {intent.amount} {intent.currency} owed to {account.handle} (wallet {account.public_address})")


def _read_store() -> AccountStore:
    s = load_settings(require_secrets=False)
    db = DB(s.db_path)
    init_db(db)
    return AccountStore(db)


def cmd_pending(handle: str) -> None:
    claims = PendingClaimLedger(_read_store()).list_pending(handle)
    if not claims:
        print(f"No pending claims for {normalize_handle(handle)}")
        return
    print(f"Pending claims for {normalize_handle(handle)}:")
    for c in claims:
        print(f"  post {c.origin_reference} from {c.sender}: {c.amount} {c.currency} ({c.created_at})")


def cmd_history(handle: str) -> None:
    events = _read_store().history(handle)
    if not events:
        print(f"No history for {normalize_handle(handle)}")
        return
    for e in events:
        print(
            f"  {e.timestamp} {e.direction.value:6} {e.amount} {e.currency} "
            f"{e.counterparty_handle} {e.chain_tx_id}"
        )


def cmd_claim(handle: str, post_id: Optional[str], sender: Optional[str], claim_all: bool) -> None:
    app = _build(load_settings())
    account = app.resolver.lookup(handle)
    if account is None:
        raise SystemExit(f"No account for {normalize_handle(handle)}")

    if claim_all:
        targets = [(c.origin_reference, c.sender) for c in app.claims.list_pending(account.handle)]
    elif post_id and sender:
        targets = [(post_id, sender)]
    else:
        raise SystemExit("Give --post and --sender, or --all")

    claimed = 0
    for origin_reference, from_handle in targets:
        try:
            event = app.claims.resolve_claim(account, origin_reference, from_handle)
        except SoltipError as e:
            print(f"WARNING: {e}")
            continue
        claimed += 1
        print(f"Claimed {event.amount} {event.currency} from {event.counterparty_handle} ({event.chain_tx_id})")
    print(f"OK: claimed {claimed} of {len(targets)}")


def cmd_withdraw(handle: str, to_address: str, amount: str) -> None:
    app = _build(load_settings())
    account = app.resolver.lookup(handle)
    if account is None:
        raise SystemExit(f"No account for {normalize_handle(handle)}")
    result = app.executor.withdraw(account, to_address, parse_positive_amount(amount))
    if result.ok:
        print(f"OK: sent {amount} SOL to {to_address}: {app.settings.explorer_tx_url.format(signature=result.chain_tx_id)}")
        return
    raise SystemExit(f"Withdrawal failed [{result.outcome.value}]: {result.detail}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="soltip")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")
    sub.add_parser("keygen-secret", help="Print a new SOLTIP_ENCRYPTION_KEY value")

    p_once = sub.add_parser("poll-once", help="Run one mention polling cycle")
    p_once.add_argument("--dry-run", action="store_true", help="Log replies instead of posting them")

    p_poll = sub.add_parser("poll", help="Poll mentions on a fixed interval")
    p_poll.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: SOLTIP_POLL_INTERVAL_S)")
    p_poll.add_argument("--max-cycles", type=int, default=None)
    p_poll.add_argument("--no-reconcile", action="store_true", help="Skip reconciling timed-out transfers before each cycle")
    p_poll.add_argument("--dry-run", action="store_true")

    sub.add_parser("reconcile", help="Settle transfers that timed out during confirmation")

    p_ensure = sub.add_parser("ensure-account", help="Create or fetch the custodial wallet for a handle")
    p_ensure.add_argument("handle")
    p_ensure.add_argument("--external-id", type=str, default=None)

    p_signup = sub.add_parser("signup", help="Attach a verified X identity to a handle")
    p_signup.add_argument("handle")
    p_signup.add_argument("--external-id", type=str, required=True)
    p_signup.add_argument("--wallet", type=str, default=None, help="Self-managed wallet address")

    p_address = sub.add_parser("address", help="Print the deposit address of a handle")
    p_address.add_argument("handle")

    p_balance = sub.add_parser("balance", help="On-chain SOL balance of a handle or address")
    p_balance.add_argument("target")

    p_ingest = sub.add_parser("ingest", help="Record a tip for a handle without a mention")
    p_ingest.add_argument("--sender", type=str, required=True)
    p_ingest.add_argument("--recipient", type=str, required=True)
    p_ingest.add_argument("--amount", type=str, required=True)
    p_ingest.add_argument("--currency", type=str, default="SOL")
    p_ingest.add_argument("--reference", type=str, required=True, help="Originating post id")

    p_pending = sub.add_parser("pending", help="List pending claims for a handle")
    p_pending.add_argument("handle")

    p_history = sub.add_parser("history", help="Show ledger history for a handle")
    p_history.add_argument("handle")

    p_claim = sub.add_parser("claim", help="Claim pending tips")
    p_claim.add_argument("handle")
    p_claim.add_argument("--post", type=str, default=None, help="Originating post id")
    p_claim.add_argument("--sender", type=str, default=None)
    p_claim.add_argument("--all", action="store_true")

    p_withdraw = sub.add_parser("withdraw", help="Send SOL out of a custodial wallet")
    p_withdraw.add_argument("handle")
    p_withdraw.add_argument("--to", type=str, required=True)
    p_withdraw.add_argument("--amount", type=str, required=True)

    args = parser.parse_args()

    if args.cmd == "init-db":
        cmd_init_db()
        return
    if args.cmd == "keygen-secret":
        cmd_keygen_secret()
        return

    _setup_logging(load_settings(require_secrets=False).log_level)

    if args.cmd == "poll-once":
        cmd_poll_once(dry_run=bool(args.dry_run))
        return
    if args.cmd == "poll":
        cmd_poll(
            interval_s=args.interval,
            max_cycles=args.max_cycles,
            reconcile=not args.no_reconcile,
            dry_run=bool(args.dry_run),
        )
        return
    if args.cmd == "reconcile":
        cmd_reconcile()
        return
    if args.cmd == "ensure-account":
        cmd_ensure_account(args.handle, args.external_id)
        return
    if args.cmd == "signup":
        cmd_signup(args.handle, args.external_id, args.wallet)
        return
    if args.cmd == "address":
        cmd_address(args.handle)
        return
    if args.cmd == "balance":
        cmd_balance(args.target)
        return
    if args.cmd == "ingest":
        cmd_ingest(args.sender, args.recipient, args.amount, args.currency, args.reference)
        return
    if args.cmd == "pending":
        cmd_pending(args.handle)
        return
    if args.cmd == "history":
        cmd_history(args.handle)
        return
    if args.cmd == "claim":
        cmd_claim(args.handle, args.post, args.sender, bool(args.all))
        return
    if args.cmd == "withdraw":
        cmd_withdraw(args.handle, args.to, args.amount)
        return

    raise SystemExit("Unknown command")
