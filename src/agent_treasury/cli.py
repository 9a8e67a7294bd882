"""
Agent treasury CLI: Safe setup, co-signing and allowance refills for AI agents.

Commands:
    agent-treasury deploy      Deploy a new Safe owned by a human and the agent
    agent-treasury configure   Enable the allowance module and set agent allowances
    agent-treasury propose     Propose a Safe transaction for co-signing
    agent-treasury pending     List pending proposals
    agent-treasury confirm     Add this owner's signature to a proposal
    agent-treasury execute     Submit a fully signed proposal
    agent-treasury refill      Top up the agent wallet within its allowance
    agent-treasury pull        Pull a specific amount within the allowance
    agent-treasury status      Show owners, allowances, balances and proposals
    agent-treasury audit       View audit trail
"""

from __future__ import annotations

import functools
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from . import __version__
from .aggregator import FileProposalStore, SignatureAggregator
from .audit import AuditTrail, EventType
from .config import TreasuryConfig, load_config
from .deploy import SAFE_PROXY_FACTORY, SafeFactory, deploy_safe, plan_deployment, verify_deployment
from .errors import ConfigError, TreasuryError
from .keys import KeySigner, LocalKeySigner, resolve_private_key
from .ledger import Ledger, Web3Ledger, Web3SafeFactory
from .policy import now_minutes
from .proposals import ProposalService
from .reconciler import reconcile
from .refill import RefillService, RefillStatus
from .relay import SafeTransactionServiceClient
from .sequencer import ExecutionSequencer, StepStatus
from .transaction import Operation, parse_hex_data
from .units import format_units, to_wei


# ── Wiring ────────────────────────────────────────────────────────


OWNER_KEY_PROMPT = "Owner private key or op:// / keychain:// reference"
DELEGATE_KEY_PROMPT = "Agent (delegate) private key or op:// / keychain:// reference"


def _make_signer(
    config: TreasuryConfig, key_input: Optional[str], prompt: str = OWNER_KEY_PROMPT
) -> KeySigner:
    reference = key_input or config.key_ref
    if not reference:
        reference = click.prompt(prompt, hide_input=True)
    private_key = resolve_private_key(
        reference,
        keychain_db=config.keychain_db,
        keychain_pass_file=config.keychain_pass_file,
    )
    return LocalKeySigner.from_private_key(private_key)


def _make_ledger(config: TreasuryConfig, signer: Optional[KeySigner]) -> Ledger:
    account = signer.account if isinstance(signer, LocalKeySigner) else None
    return Web3Ledger(config.rpc_url, config.safe_address, sender=account, chain_id=config.chain_id)


def _make_factory(config: TreasuryConfig, signer: Optional[KeySigner]) -> SafeFactory:
    account = signer.account if isinstance(signer, LocalKeySigner) else None
    return Web3SafeFactory(config.rpc_url, SAFE_PROXY_FACTORY, sender=account, chain_id=config.chain_id)


def _make_relay(config: TreasuryConfig) -> Optional[SafeTransactionServiceClient]:
    if not config.tx_service_url:
        return None
    return SafeTransactionServiceClient(config.tx_service_url)


def _audit(config: TreasuryConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path, key=config.audit_hmac_key)


def _aggregator(config: TreasuryConfig) -> SignatureAggregator:
    return SignatureAggregator(FileProposalStore(config.proposals_dir))


def _fail(message: str):
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _config(
    ctx: click.Context, overrides: Optional[dict] = None, require_safe: bool = True
) -> TreasuryConfig:
    try:
        return load_config(env_file=ctx.obj.get("env_file"), overrides=overrides, require_safe=require_safe)
    except ConfigError as e:
        _fail(f"Configuration error: {e}")


def _key_from_argv(key_param: str) -> bool:
    ctx = click.get_current_context(silent=True)
    return ctx is not None and ctx.get_parameter_source(key_param) == ParameterSource.COMMANDLINE


def key_options(fn):
    """Add --owner-key / --unsafe-allow-key-arg and refuse raw keys on argv."""

    @click.option("--owner-key", default=None, hidden=True,
                  help="Owner private key hex or reference (prefer SAFE_KEY_REF or the prompt)")
    @click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
    )
    @functools.wraps(fn)
    def wrapper(*args, owner_key: Optional[str], unsafe_allow_key_arg: bool, **kwargs):
        if owner_key and _key_from_argv("owner_key") and not unsafe_allow_key_arg:
            _fail(
                "Refusing --owner-key from argv. Set SAFE_KEY_REF, use the prompt, or pass "
                "--unsafe-allow-key-arg to acknowledge the risk."
            )
        return fn(*args, owner_key=owner_key, **kwargs)

    return wrapper


# ── CLI ───────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option("--env-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to a .env file (default: ~/.agent-treasury/.env)")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, env_file: Optional[Path], log_level: str):
    """Agent treasury: Safe allowance management for AI agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@main.command()
@click.option("--owner", "human_owner", default=None, help="Human owner address (default: SAFE_OWNER)")
@click.option("--agent", default=None, help="Agent address, only with --dry-run (default: the key's address)")
@click.option("--threshold", type=int, default=1, show_default=True, help="Signatures required")
@click.option("--salt-nonce", type=int, default=None, help="CREATE2 salt nonce (default: random)")
@click.option("--dry-run", is_flag=True, help="Print the deployment plan without sending it")
@key_options
@click.pass_context
def deploy(
    ctx: click.Context,
    human_owner: Optional[str],
    agent: Optional[str],
    threshold: int,
    salt_nonce: Optional[int],
    dry_run: bool,
    owner_key: Optional[str],
):
    """Deploy a Safe owned by a human owner and the agent, paid for by the agent."""
    if agent and not dry_run:
        _fail("--agent only applies to --dry-run; a deployment is sent from the agent key")
    config = _config(ctx, require_safe=False)
    human_owner = human_owner or config.owner_address
    if not human_owner:
        _fail("Pass --owner or set SAFE_OWNER to the human owner address")
    try:
        signer = None if agent else _make_signer(config, owner_key, DELEGATE_KEY_PROMPT)
        payer = agent or signer.address
        plan = plan_deployment([human_owner, payer], threshold, salt_nonce)
        result = deploy_safe(
            _make_factory(config, signer),
            plan,
            payer=payer,
            dry_run=dry_run,
            audit=None if dry_run else _audit(config),
        )
        if not dry_run:
            time.sleep(config.settle_seconds)
            deployed = replace(config, safe_address=result.safe_address)
            verify_deployment(_make_ledger(deployed, None), plan, config.retry_policy())
    except TreasuryError as e:
        _fail(f"Deployment failed: {e}")

    click.echo(f"🏗️  Safe {plan.threshold}-of-{len(plan.owners)} on chain {config.chain_id}")
    for owner in plan.owners:
        click.echo(f"     - {owner}")
    click.echo(f"   Salt nonce: {plan.salt_nonce}")
    if dry_run:
        click.echo(f"   Initializer: 0x{plan.initializer().hex()}")
        click.echo("   (dry run, nothing submitted)")
        return
    click.echo(f"✅ Deployed {result.safe_address}: tx {result.tx_hash}")
    click.echo(f"   Add SAFE_ADDRESS={result.safe_address} to {config.home / '.env'}")


@main.command()
@click.option("--delegate", default=None, help="Agent address (default: the signing owner)")
@click.option("--mor-allowance", default=None, help="MOR allowance per period (e.g. 50)")
@click.option("--eth-allowance", default=None, help="ETH allowance per period (e.g. 0.05)")
@click.option("--reset-minutes", type=int, default=None, help="Allowance reset period in minutes")
@click.option("--dry-run", is_flag=True, help="Show the plan without executing")
@key_options
@click.pass_context
def configure(
    ctx: click.Context,
    delegate: Optional[str],
    mor_allowance: Optional[str],
    eth_allowance: Optional[str],
    reset_minutes: Optional[int],
    dry_run: bool,
    owner_key: Optional[str],
):
    """Enable the allowance module, register the agent and set its allowances."""
    config = _config(ctx, {
        "MOR_DAILY_ALLOWANCE": mor_allowance,
        "ETH_DAILY_ALLOWANCE": eth_allowance,
        "RESET_MINUTES": str(reset_minutes) if reset_minutes is not None else None,
    })
    try:
        signer = _make_signer(config, owner_key)
        ledger = _make_ledger(config, signer)
        sequencer = ExecutionSequencer(ledger, signer, config, delegate=delegate, audit=_audit(config))
        report = sequencer.run(dry_run=dry_run)
    except TreasuryError as e:
        _fail(f"Configure failed: {e}")

    icons = {StepStatus.EXECUTED: "✅", StepStatus.SKIPPED: "⏭️ ", StepStatus.PLANNED: "📝"}
    click.echo(f"🔐 Safe {report.safe}")
    click.echo(f"   Signer:   {report.signer}")
    click.echo(f"   Delegate: {report.delegate}")
    for step in report.steps:
        tx = f" tx {step.tx_hash}" if step.tx_hash else ""
        click.echo(f"   {icons[step.status]} {step.name}: {step.description}{tx}")
    if dry_run:
        click.echo("   (dry run, nothing submitted)")
        return
    click.echo(f"   Writes:   {report.writes}")
    click.echo(f"   Module enabled: {report.module_enabled}")
    for symbol, allowance in report.allowances.items():
        click.echo(
            f"   {symbol}: limit {format_units(allowance['amount'])}, "
            f"spent {format_units(allowance['spent'])}, reset {allowance['reset_time_min']}min"
        )


@main.group()
def propose():
    """Propose a Safe transaction for co-signing."""
    pass


def _proposal_service(config: TreasuryConfig, owner_key: Optional[str]) -> ProposalService:
    signer = _make_signer(config, owner_key)
    ledger = _make_ledger(config, signer)
    return ProposalService(
        ledger,
        signer,
        _aggregator(config),
        config,
        relay=_make_relay(config),
        audit=_audit(config),
    )


def _echo_state(title: str, state) -> None:
    click.echo(f"✅ {title}: {state.commitment}")
    click.echo(f"   Nonce:         {state.nonce}")
    click.echo(f"   Confirmations: {len(state.signers)} of {state.threshold}")
    if state.executable:
        click.echo("   Ready to execute")
    else:
        click.echo(f"   Waiting for {state.missing} more signature(s)")


@propose.command("transfer")
@click.argument("symbol")
@click.argument("recipient")
@click.argument("amount")
@key_options
@click.pass_context
def propose_transfer(ctx: click.Context, symbol: str, recipient: str, amount: str, owner_key: Optional[str]):
    """Propose sending AMOUNT of SYMBOL (MOR or ETH) from the Safe to RECIPIENT."""
    config = _config(ctx)
    try:
        state = _proposal_service(config, owner_key).transfer(symbol, recipient, to_wei(amount))
    except TreasuryError as e:
        _fail(f"Proposal failed: {e}")
    _echo_state("Transfer proposed", state)


@propose.command("threshold")
@click.argument("threshold", type=int)
@key_options
@click.pass_context
def propose_threshold(ctx: click.Context, threshold: int, owner_key: Optional[str]):
    """Propose changing the Safe's signature threshold."""
    config = _config(ctx)
    try:
        state = _proposal_service(config, owner_key).change_threshold(threshold)
    except TreasuryError as e:
        _fail(f"Proposal failed: {e}")
    _echo_state("Threshold change proposed", state)


@propose.command("raw")
@click.option("--to", "to", required=True, help="Call target")
@click.option("--value", default="0", help="Native value in ETH")
@click.option("--data", default="0x", help="Calldata hex")
@click.option("--delegatecall", is_flag=True, help="Use DELEGATECALL instead of CALL")
@key_options
@click.pass_context
def propose_raw(
    ctx: click.Context,
    to: str,
    value: str,
    data: str,
    delegatecall: bool,
    owner_key: Optional[str],
):
    """Propose an arbitrary call from the Safe."""
    config = _config(ctx)
    operation = Operation.DELEGATE_CALL if delegatecall else Operation.CALL
    try:
        state = _proposal_service(config, owner_key).raw(
            to, value=to_wei(value), data=parse_hex_data(data), operation=operation
        )
    except TreasuryError as e:
        _fail(f"Proposal failed: {e}")
    _echo_state("Call proposed", state)


@main.command()
@click.option("--sync/--no-sync", default=True, help="Merge the relay's queue first")
@click.pass_context
def pending(ctx: click.Context, sync: bool):
    """List pending proposals and who still needs to sign."""
    config = _config(ctx)
    try:
        ledger = _make_ledger(config, None)
        service = ProposalService(ledger, None, _aggregator(config), config,
                                  relay=_make_relay(config) if sync else None)
        if sync:
            merged = service.sync_from_relay()
            if merged:
                click.echo(f"🔄 Merged {merged} proposal(s) from the relay")
        views = service.pending()
    except TreasuryError as e:
        _fail(f"Could not list proposals: {e}")

    if not views:
        click.echo("No pending proposals.")
        return
    for view in views:
        state = view.state
        icon = "✅" if state.executable else "⏳"
        click.echo(f"  {icon} nonce {state.nonce} {state.commitment}")
        click.echo(f"     to {view.proposal.transaction.to}, {len(state.signers)}/{state.threshold} signatures")
        if view.missing_signers:
            click.echo(f"     missing: {', '.join(view.missing_signers)}")


@main.command()
@click.argument("commitment")
@key_options
@click.pass_context
def confirm(ctx: click.Context, commitment: str, owner_key: Optional[str]):
    """Sign a pending proposal as this owner."""
    config = _config(ctx)
    try:
        state = _proposal_service(config, owner_key).confirm(commitment)
    except TreasuryError as e:
        _fail(f"Confirm failed: {e}")
    _echo_state("Signature added", state)


@main.command()
@click.argument("commitment")
@key_options
@click.pass_context
def execute(ctx: click.Context, commitment: str, owner_key: Optional[str]):
    """Submit a proposal whose signatures meet the current threshold."""
    config = _config(ctx)
    try:
        result = _proposal_service(config, owner_key).execute(commitment)
    except TreasuryError as e:
        _fail(f"Execution failed: {e}")
    click.echo(f"✅ Executed {result.commitment}")
    click.echo(f"   Nonce:   {result.nonce}")
    click.echo(f"   Tx:      {result.tx_hash}")
    click.echo(f"   Signers: {', '.join(result.signers)}")
    if result.pruned:
        click.echo(f"   Dropped {result.pruned} superseded proposal(s)")


@main.command()
@click.option("--dry-run", is_flag=True, help="Decide without submitting")
@key_options
@click.pass_context
def refill(ctx: click.Context, dry_run: bool, owner_key: Optional[str]):
    """Top up the agent wallet from the Safe when balances run low."""
    config = _config(ctx)
    try:
        signer = _make_signer(config, owner_key, DELEGATE_KEY_PROMPT)
        service = RefillService(_make_ledger(config, signer), config, audit=_audit(config))
        outcomes = service.run(dry_run=dry_run)
    except TreasuryError as e:
        _fail(f"Refill failed: {e}")

    icons = {
        RefillStatus.OK: "✅",
        RefillStatus.SKIPPED: "⏭️ ",
        RefillStatus.DENIED: "🚫",
        RefillStatus.SUBMITTED: "💸",
        RefillStatus.REVERTED: "❌",
        RefillStatus.FAILED: "❌",
    }
    for outcome in outcomes:
        line = f"  {icons[outcome.status]} {outcome.symbol}: balance {format_units(outcome.balance)}"
        if outcome.amount:
            line += f", refill {format_units(outcome.amount)}"
        if outcome.tx_hash:
            line += f" tx {outcome.tx_hash}"
        if outcome.reason:
            line += f" ({outcome.reason})"
        click.echo(line)
    if any(o.status in (RefillStatus.REVERTED, RefillStatus.FAILED) for o in outcomes):
        sys.exit(1)


@main.command()
@click.argument("symbol")
@click.argument("amount")
@click.option("--to", "recipient", default=None, help="Recipient (default: the agent itself)")
@key_options
@click.pass_context
def pull(ctx: click.Context, symbol: str, amount: str, recipient: Optional[str], owner_key: Optional[str]):
    """Pull AMOUNT of SYMBOL from the Safe within the agent's allowance."""
    config = _config(ctx)
    try:
        asset = config.asset(symbol)
        signer = _make_signer(config, owner_key, DELEGATE_KEY_PROMPT)
        service = RefillService(_make_ledger(config, signer), config, audit=_audit(config))
        receipt = service.pull(asset, to_wei(amount), recipient)
    except TreasuryError as e:
        _fail(f"Pull denied: {e}")
    click.echo(f"✅ Pulled {amount} {asset.symbol}: tx {receipt.tx_hash}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show the Safe's owners, allowances, balances and pending proposals."""
    config = _config(ctx)
    try:
        ledger = _make_ledger(config, None)
        now = now_minutes()
        report = reconcile(ledger, config, _aggregator(config).pending(), now)
    except TreasuryError as e:
        _fail(f"Status failed: {e}")

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    click.echo(f"🔐 Safe {report.safe} (chain {report.chain_id})")
    click.echo(f"   Threshold: {report.threshold} of {len(report.owners)}")
    for owner in report.owners:
        click.echo(f"     - {owner}")
    click.echo(f"   Nonce:     {report.nonce}")
    click.echo(f"   Allowance module {report.module}: {'enabled' if report.module_enabled else 'disabled'}")
    click.echo("💰 Safe balances")
    for symbol, amount in report.safe_balances.items():
        click.echo(f"   {symbol}: {format_units(amount)}")
    for delegate, balances in report.delegate_balances.items():
        click.echo(f"🤖 Delegate {delegate}")
        for symbol, amount in balances.items():
            click.echo(f"   {symbol}: {format_units(amount)}")
    if report.allowances:
        click.echo("📊 Allowances")
    for a in report.allowances:
        reset = f", next reset in {a.next_reset_min - now}min" if a.next_reset_min else ""
        click.echo(
            f"   {a.symbol} for {a.delegate}: {format_units(a.remaining)} of "
            f"{format_units(a.state.amount)} left{reset}"
        )
    if report.proposals:
        click.echo("⏳ Pending")
    for p in report.proposals:
        ready = "ready" if p.executable else f"missing {', '.join(p.missing_owners) or '-'}"
        click.echo(f"   nonce {p.nonce} {p.commitment}: {p.confirmations}/{p.required} ({ready})")
    for error in report.errors:
        click.echo(f"⚠️  {error}")


@main.command()
@click.option("--commitment", default=None, help="Filter by proposal commitment")
@click.option("--event-type", type=click.Choice([e.value for e in EventType]), default=None)
@click.option("--limit", type=int, default=20, help="Number of events")
@click.pass_context
def audit(ctx: click.Context, commitment: Optional[str], event_type: Optional[str], limit: int):
    """View the audit trail."""
    config = _config(ctx)
    trail = _audit(config)
    try:
        events = trail.read_events(
            commitment=commitment,
            event_type=EventType(event_type) if event_type else None,
            limit=limit,
        )
    except RuntimeError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        icon = "✅" if event.success else "❌"
        asset = f" {format_units(int(event.amount))} {event.asset}" if event.amount and event.asset else ""
        ref = f" {event.commitment[:18]}…" if event.commitment else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {icon} {event.event_type}{asset}{ref}{reason}")


if __name__ == "__main__":
    main()
