"""
LedgerMind CLI — Payment-intent mirror and funded payments for AI agents.

Commands:
    ledgermind index      Run the event indexer (poll loop or --once)
    ledgermind cursor     Show the last fully indexed block
    ledgermind intents    List intents for a payer or agent
    ledgermind intent     Show one intent's projected state
    ledgermind receipts   List payment receipts for an intent
    ledgermind pay        Execute a payment with one-shot auto-funding
    ledgermind topup      Add funds to an intent (payer)
    ledgermind revoke     Revoke an intent (payer)
    ledgermind audit      View the payment audit trail
    ledgermind demo       Run a full flow against an in-process chain
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account
from web3 import Web3

from .audit import AuditTrail
from .blobstore import IPFS_URI_PREFIX, IpfsBlobStore, LocalBlobStore, ReceiptTranscript
from .chain import Web3ChainReader
from .config import LedgerConfig
from .errors import ConfigError, LedgerMindError
from .indexer import EventIndexer
from .local_chain import LocalChain
from .orchestrator import FundedPaymentOrchestrator, PaymentOutcome, PaymentRequest
from .payer import PayerActions
from .projector import IntentView
from .queries import IntentQueries
from .store import LedgerStore
from .units import format_units, parse_units
from .wallet import ChainWallet


# ── Wiring ────────────────────────────────────────────────────────

def _load_config() -> LedgerConfig:
    try:
        return LedgerConfig.from_env()
    except ConfigError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)


def _blob_store(config: LedgerConfig):
    if config.ipfs_api_url:
        return IpfsBlobStore(
            config.ipfs_api_url,
            api_key=config.ipfs_api_key,
            api_secret=config.ipfs_api_secret,
        )
    return LocalBlobStore(config.blob_dir)


def _gateway_link(uri: str, config: LedgerConfig) -> str:
    if uri.startswith(IPFS_URI_PREFIX):
        return f"{config.ipfs_gateway_url.rstrip('/')}/{uri[len(IPFS_URI_PREFIX):]}"
    return uri


def _refuse_key_from_argv(param: str, flag: str, envvar: str, allowed: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not allowed:
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input, set "
            f"{envvar}, or pass --unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _payer_actions(config: LedgerConfig, account) -> PayerActions:
    reader = Web3ChainReader(config.rpc_url, config.factory_address, timeout=config.rpc_timeout)
    return PayerActions(reader, ChainWallet(reader.w3, account, chain_id=config.chain_id))


def _fmt(amount: int, decimals: int) -> str:
    return format_units(amount, decimals)


def _echo_view(view: IntentView, decimals: int) -> None:
    click.echo(f"📄 Intent {view.address}  [{view.state.value}]")
    click.echo(f"   Payer:     {view.payer}")
    click.echo(f"   Agent:     {view.agent}")
    click.echo(f"   Token:     {view.token}")
    click.echo(
        f"   Spent:     {_fmt(view.spent, decimals)} of {_fmt(view.total_cap, decimals)}"
        f" (remaining {_fmt(view.remaining_cap, decimals)})"
    )
    click.echo(f"   Per-tx:    {_fmt(view.per_tx_cap, decimals)}")
    click.echo(
        f"   Window:    {time.strftime('%Y-%m-%d %H:%M', time.localtime(view.start_time))}"
        f" → {time.strftime('%Y-%m-%d %H:%M', time.localtime(view.end_time))}"
    )
    if view.merchant_restricted:
        allowed = [m for m, ok in view.merchants.items() if ok]
        click.echo(f"   Merchants: {', '.join(allowed) or 'none'}")
    else:
        click.echo("   Merchants: any")
    click.echo(
        f"   Receipts:  {view.receipt_count} | topped up {_fmt(view.topped_up_total, decimals)}"
        f" | withdrawn {_fmt(view.withdrawn_total, decimals)}"
    )
    if view.revoke_reason is not None:
        click.echo(f"   Revoked by {view.revoked_by}: {view.revoke_reason}")


def _echo_outcome(outcome: PaymentOutcome, decimals: int) -> None:
    if outcome.success:
        click.echo(f"✅ Payment executed: {_fmt(outcome.amount, decimals)} → {outcome.merchant}")
        click.echo(f"   Tx:        {outcome.tx_hash}")
        if outcome.funding_tx_hash:
            click.echo(
                f"   Funded:    {_fmt(outcome.funding_amount, decimals)} in {outcome.funding_tx_hash}"
            )
        click.echo(f"   Attempts:  {outcome.execute_attempts}")
        click.echo(f"   Receipt:   {outcome.receipt_uri or outcome.receipt_hash}")
    else:
        click.echo(f"❌ Payment failed [{outcome.kind}]: {outcome.reason}")
        if outcome.revert_reason:
            click.echo(f"   Revert:    {outcome.revert_reason}")
    click.echo(f"   Run ID:    {outcome.run_id}")


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Logging verbosity")
def main(log_level: str):
    """LedgerMind — Payment-intent mirror and funded payments for AI agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
def index(once: bool):
    """Mirror on-chain intent events into the local ledger."""
    config = _load_config()
    try:
        factory = config.require_factory()
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    store = LedgerStore(config.db_path)
    reader = Web3ChainReader(config.rpc_url, factory, timeout=config.rpc_timeout)
    indexer = EventIndexer(
        reader, store, factory,
        window=config.block_window,
        poll_interval=config.poll_interval,
    )

    if once:
        result = indexer.run_cycle()
        if result is None or not result.ok:
            click.echo(f"❌ Cycle failed: {result.error if result else 'already running'}", err=True)
            sys.exit(1)
        click.echo(
            f"✅ Indexed {result.from_block}-{result.to_block}: {result.intents_created} new intents, "
            f"{result.events_applied} events, {result.events_skipped} skipped"
        )
        return

    click.echo(f"🔄 Indexing {factory} every {config.poll_interval:g}s (Ctrl-C to stop)")
    try:
        indexer.run_forever()
    except KeyboardInterrupt:
        click.echo("\n👋 Indexer stopped")


@main.command()
def cursor():
    """Show the last fully indexed block."""
    config = _load_config()
    value = IntentQueries(LedgerStore(config.db_path)).get_cursor()
    if value is None:
        click.echo("No blocks indexed yet.")
    else:
        click.echo(f"📍 Last indexed block: {value}")


@main.command()
@click.option("--payer", default=None, help="Filter by payer address")
@click.option("--agent", default=None, help="Filter by agent address")
@click.option("--state", type=click.Choice(["active", "paused", "revoked", "expired"]),
              default=None, help="Filter by derived lifecycle state")
@click.option("--limit", type=int, default=20, help="Page size")
@click.option("--offset", type=int, default=0, help="Page offset")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
def intents(
    payer: Optional[str],
    agent: Optional[str],
    state: Optional[str],
    limit: int,
    offset: int,
    as_json: bool,
):
    """List intents, newest first."""
    config = _load_config()
    queries = IntentQueries(LedgerStore(config.db_path))
    try:
        views = queries.list_intents(payer=payer, agent=agent, state=state, limit=limit, offset=offset)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([v.to_dict() for v in views], indent=2))
        return
    if not views:
        click.echo("No intents found.")
        return
    d = config.token_decimals
    for v in views:
        click.echo(
            f"  {v.address}  {v.state.value:<8} spent {_fmt(v.spent, d)}/{_fmt(v.total_cap, d)}"
            f"  agent {v.agent}"
        )


@main.command()
@click.argument("address")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
def intent(address: str, as_json: bool):
    """Show one intent's projected state."""
    config = _load_config()
    queries = IntentQueries(LedgerStore(config.db_path))
    try:
        view = queries.get_intent(address)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if view is None:
        click.echo(f"❌ Intent not indexed: {address}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(view.to_dict(), indent=2))
    else:
        _echo_view(view, config.token_decimals)


@main.command()
@click.argument("address")
@click.option("--limit", type=int, default=20, help="Page size")
@click.option("--offset", type=int, default=0, help="Page offset")
def receipts(address: str, limit: int, offset: int):
    """List payment receipts for an intent, newest first."""
    config = _load_config()
    queries = IntentQueries(LedgerStore(config.db_path))
    try:
        rows = queries.list_receipts(address, limit=limit, offset=offset)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if not rows:
        click.echo("No receipts found.")
        return
    for r in rows:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(r.timestamp))
        click.echo(f"  {ts} {_fmt(r.amount, config.token_decimals)} → {r.merchant}")
        click.echo(f"     tx {r.tx_hash} (block {r.block_number}, gas {r.gas_used})")
        click.echo(f"     receipt {r.receipt_hash} {_gateway_link(r.receipt_uri, config)}")


@main.command()
@click.option("--intent", "intent_address", required=True, help="Payment intent address")
@click.option("--merchant", required=True, help="Merchant address")
@click.option("--amount", required=True, help="Amount in token units (e.g. 1.25)")
@click.option("--transcript", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="JSON action transcript to pin as the receipt")
@click.option("--receipt-hash", default=None, help="Precomputed bytes32 receipt hash")
@click.option("--receipt-uri", default="", help="URI of the precomputed receipt")
@click.option("--agent-key", prompt=True, hide_input=True, envvar="LEDGERMIND_AGENT_KEY",
              help="Agent's Ethereum private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --agent-key via argv (unsafe; can leak in shell/process history).",
)
def pay(
    intent_address: str,
    merchant: str,
    amount: str,
    transcript: Optional[Path],
    receipt_hash: Optional[str],
    receipt_uri: str,
    agent_key: str,
    unsafe_allow_key_arg: bool,
):
    """Execute a payment, funding the escrow from the agent once if needed."""
    _refuse_key_from_argv("agent_key", "--agent-key", "LEDGERMIND_AGENT_KEY", unsafe_allow_key_arg)

    config = _load_config()
    try:
        base_units = parse_units(amount, config.token_decimals)
        transcript_blob = json.loads(transcript.read_text()) if transcript else None
        account = Account.from_key(agent_key)
    except ValueError as e:
        click.echo(f"❌ Invalid input: {e}", err=True)
        sys.exit(1)

    reader = Web3ChainReader(config.rpc_url, config.factory_address, timeout=config.rpc_timeout)
    wallet = ChainWallet(reader.w3, account, chain_id=config.chain_id)
    orchestrator = FundedPaymentOrchestrator(
        reader,
        wallet,
        AuditTrail(config.audit_path, config.audit_key_path),
        blob_store=_blob_store(config),
        auto_fund_buffer=config.auto_fund_buffer,
    )
    outcome = orchestrator.run(
        PaymentRequest(
            intent=intent_address,
            merchant=merchant,
            amount=base_units,
            receipt_hash=receipt_hash,
            receipt_uri=receipt_uri,
            transcript=transcript_blob,
        )
    )
    _echo_outcome(outcome, config.token_decimals)
    if not outcome.success:
        sys.exit(1)


def _payer_account(payer_key: str, unsafe_allow_key_arg: bool):
    _refuse_key_from_argv("payer_key", "--payer-key", "LEDGERMIND_PAYER_KEY", unsafe_allow_key_arg)
    try:
        return Account.from_key(payer_key)
    except ValueError as e:
        click.echo(f"❌ Invalid input: {e}", err=True)
        sys.exit(1)


def _echo_payer_failure(action: str, e: LedgerMindError) -> None:
    click.echo(f"❌ {action} failed [{e.kind}]: {e}", err=True)
    revert_reason = getattr(e, "revert_reason", None)
    if revert_reason:
        click.echo(f"   Revert:    {revert_reason}", err=True)


@main.command()
@click.option("--intent", "intent_address", required=True, help="Payment intent address")
@click.option("--amount", required=True, help="Amount in token units (e.g. 1.25)")
@click.option("--payer-key", prompt=True, hide_input=True, envvar="LEDGERMIND_PAYER_KEY",
              help="Payer's Ethereum private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --payer-key via argv (unsafe; can leak in shell/process history).",
)
def topup(intent_address: str, amount: str, payer_key: str, unsafe_allow_key_arg: bool):
    """Add funds to an intent's escrow (payer only)."""
    account = _payer_account(payer_key, unsafe_allow_key_arg)
    config = _load_config()
    try:
        base_units = parse_units(amount, config.token_decimals)
    except ValueError as e:
        click.echo(f"❌ Invalid input: {e}", err=True)
        sys.exit(1)

    try:
        result = _payer_actions(config, account).top_up(intent_address, base_units)
    except LedgerMindError as e:
        _echo_payer_failure("Top-up", e)
        sys.exit(1)

    click.echo(f"✅ Topped up {result.intent} with {_fmt(result.amount, config.token_decimals)}")
    if result.approve_tx_hash:
        click.echo(f"   Approved:  {result.approve_tx_hash}")
    click.echo(f"   Tx:        {result.tx_hash}")
    click.echo(f"   Balance:   {_fmt(result.new_balance, config.token_decimals)}")


@main.command()
@click.option("--intent", "intent_address", required=True, help="Payment intent address")
@click.option("--reason", default=None, help="Reason recorded on-chain")
@click.option("--payer-key", prompt=True, hide_input=True, envvar="LEDGERMIND_PAYER_KEY",
              help="Payer's Ethereum private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --payer-key via argv (unsafe; can leak in shell/process history).",
)
def revoke(intent_address: str, reason: Optional[str], payer_key: str, unsafe_allow_key_arg: bool):
    """Revoke an intent so no further payments can execute (payer only)."""
    account = _payer_account(payer_key, unsafe_allow_key_arg)
    config = _load_config()
    try:
        result = _payer_actions(config, account).revoke(intent_address, reason)
    except LedgerMindError as e:
        _echo_payer_failure("Revoke", e)
        sys.exit(1)

    click.echo(f"✅ Revoked {result.intent}: {result.reason}")
    click.echo(f"   Tx:        {result.tx_hash}")


@main.command()
@click.option("--run-id", default=None, help="Filter by run ID")
@click.option("--intent", "intent_address", default=None, help="Filter by intent address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(run_id: Optional[str], intent_address: Optional[str], limit: int):
    """View the payment audit trail."""
    config = _load_config()
    trail = AuditTrail(config.audit_path, config.audit_key_path)
    try:
        events = trail.read_events(run_id=run_id, intent=intent_address, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        attempt = f" #{event.attempt}" if event.attempt else ""
        tx = f" {event.tx_hash[:12]}…" if event.tx_hash else ""
        reason = f" ({event.kind}: {event.revert_reason or event.reason})" if not event.success else ""
        click.echo(f"  {ts} {status} [{event.run_id}] {event.event_type}{attempt}{tx}{reason}")


@main.command()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for the demo ledger and audit trail (default: temporary)")
def demo(home: Optional[Path]):
    """Run a full flow against an in-process chain."""
    if home is None:
        with tempfile.TemporaryDirectory(prefix="ledgermind-demo-") as tmp:
            _run_demo(Path(tmp))
    else:
        _run_demo(home)


def _run_demo(home: Path) -> None:
    decimals = 6

    def usdc(value: str) -> int:
        return parse_units(value, decimals)

    click.echo("🎬 LedgerMind Demo — Funded Payment Flow")
    click.echo("=" * 50)

    chain = LocalChain()
    token = Web3.to_checksum_address("0x" + "ab" * 20)
    payer, agent = Account.create(), Account.create()
    merchant = Account.create().address
    chain.mint(token, payer.address, usdc("100"))
    chain.mint(token, agent.address, usdc("5"))

    click.echo("\n1️⃣  Payer creates an intent for the agent...")
    intent_address = chain.create_intent(
        payer=payer.address,
        agent=agent.address,
        token=token,
        total_cap=usdc("10"),
        per_tx_cap=usdc("2"),
        start_time=chain.now - 60,
        end_time=chain.now + 86400,
        merchants=[merchant],
        metadata_uri="Demo: research assistant budget",
    )
    payer_actions = PayerActions(chain, chain.wallet(payer.address))
    payer_actions.top_up(intent_address, usdc("1"))
    click.echo(f"   Intent: {intent_address}")
    click.echo("   Caps: 10.00 total | 2.00/tx | escrow funded with 1.00")

    store = LedgerStore(home / "ledger.sqlite3")
    indexer = EventIndexer(chain, store, chain.factory_address, poll_interval=0.1)
    orchestrator = FundedPaymentOrchestrator(
        chain,
        chain.wallet(agent.address),
        AuditTrail(home / "audit.jsonl", home / "secrets" / "audit_hmac.key"),
        blob_store=LocalBlobStore(home / "blobs"),
        on_success=indexer.trigger,
    )
    orchestrator.subscribe(
        lambda t: click.echo(f"      → {t.state.value}{' ✅' if t.success else ' ❌'}")
    )

    click.echo("\n2️⃣  Agent pays for tool calls...")
    payments = [
        ("0.50", "within escrow"),
        ("1.50", "escrow short, agent funds once"),
        ("2.50", "over per-tx cap, no funding"),
    ]
    for value, label in payments:
        transcript = ReceiptTranscript(
            tool="web_search",
            input_hash=Web3.to_hex(Web3.keccak(text=f"query {value}")),
            output_hash=Web3.to_hex(Web3.keccak(text=f"result {value}")),
            signer=agent.address,
            nonce=value,
            chain_id=1328,
            cost=value,
        )
        click.echo(f"   {value} ({label})")
        outcome = orchestrator.run(
            PaymentRequest(intent_address, merchant, usdc(value), transcript=transcript)
        )
        if outcome.success:
            funded = f", funded {format_units(outcome.funding_amount, decimals)}" if outcome.funding_amount else ""
            click.echo(f"   ✅ paid in {outcome.execute_attempts} attempt(s){funded}")
        else:
            click.echo(f"   ❌ {outcome.kind}: {outcome.revert_reason or outcome.reason}")

    click.echo("\n3️⃣  Payer revokes the intent...")
    payer_actions.revoke(intent_address, "demo finished")

    click.echo("\n4️⃣  Indexing the chain...")
    result = indexer.run_cycle()
    click.echo(
        f"   Blocks {result.from_block}-{result.to_block}: {result.intents_created} intent, "
        f"{result.events_applied} events"
    )

    click.echo("\n5️⃣  Projected intent state...")
    view = IntentQueries(store, clock=lambda: chain.now).get_intent(intent_address)
    _echo_view(view, decimals)

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Intent → Pay → Auto-fund → Index → Project")


if __name__ == "__main__":
    main()
