"""
TonPay CLI — Off-chain coordinator for policy-bounded agent payments.

Commands:
    tonpay allowance        Show the contract's remaining allowance
    tonpay pay              Execute an agent payment
    tonpay envelope ...     Manage shared budget envelopes
    tonpay approvals ...    Inspect approval requests
    tonpay approve/reject   Resolve a pending approval
    tonpay requests         View the request audit log
    tonpay poll             Run one detection cycle
    tonpay run              Run the approval monitor with Telegram
    tonpay journal          View the operator journal
    tonpay local ...        Manage the local stand-in contract
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from typing import NoReturn, Optional

import click

from . import __version__
from .approvals import ApprovalStatus
from .chain import WalletCredentials
from .config import Settings, resolve_private_key
from .coordinator import Coordinator, PaymentOutcome
from .errors import TonPayError
from .facilitator import FacilitatorClient
from .journal import EventJournal
from .local_chain import LocalSpendingContract
from .money import format_ton, positive_ton_to_nano
from .monitor import PollLoop
from .telegram import TelegramChannel


# ── Wiring ────────────────────────────────────────────────────────

def _fail(message: str) -> NoReturn:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _wallet(key: Optional[str]) -> Optional[WalletCredentials]:
    if not key:
        return None
    return WalletCredentials.from_private_key(resolve_private_key(key))


def _local_chain(settings: Settings) -> LocalSpendingContract:
    return LocalSpendingContract(settings.local_chain_path)


def build_coordinator(settings: Settings, with_channel: bool = False) -> Coordinator:
    """Wire a coordinator to the local contract and the configured adapters."""
    channel = None
    if with_channel and settings.telegram_bot_token:
        channel = TelegramChannel(settings.telegram_bot_token)
    facilitator = FacilitatorClient(settings.facilitator_config()) if settings.facilitator_url else None
    return Coordinator(
        settings,
        _local_chain(settings),
        agent_wallet=_wallet(settings.agent_key),
        owner_wallet=_wallet(settings.owner_key),
        channel=channel,
        facilitator=facilitator,
        journal=EventJournal(settings.journal_path, settings.journal_key_path),
    )


def _coordinator(with_channel: bool = False) -> Coordinator:
    try:
        return build_coordinator(Settings.from_env(), with_channel=with_channel)
    except (TonPayError, ValueError, RuntimeError) as exc:
        _fail(f"Failed to load configuration: {exc}")


def _parse_context(raw: Optional[str]):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--context must be JSON: {exc}")


def _echo_outcome(outcome: PaymentOutcome) -> None:
    if outcome.approval_expected:
        click.echo("⏳ Payment submitted; over limit, owner approval requested")
    else:
        click.echo("✅ Payment submitted")
    click.echo(f"   Request:   {outcome.request_id}")
    click.echo(f"   Amount:    {format_ton(outcome.amount_nano)}")
    click.echo(f"   Target:    {outcome.target_address}")
    click.echo(f"   Tx:        {outcome.receipt.tx_hash or '-'}")
    if outcome.decision is not None and outcome.decision.reference:
        click.echo(f"   Reference: {outcome.decision.reference}")
    if outcome.envelope_id is not None:
        click.echo(
            f"   Envelope:  {outcome.envelope_id} "
            f"({format_ton(outcome.envelope_remaining_nano or 0)} remaining)"
        )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (default: env TONPAY_LOG_LEVEL or WARNING)")
def main(log_level: Optional[str]):
    """TonPay — Off-chain coordinator for policy-bounded agent payments."""
    level = (log_level or os.environ.get("TONPAY_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--contract", default=None, help="Contract address (default: env CONTRACT_ADDRESS)")
def allowance(contract: Optional[str]):
    """Show the contract's remaining allowance."""
    coordinator = _coordinator()
    try:
        remaining = coordinator.get_allowance(contract)
    except TonPayError as exc:
        _fail(str(exc))
    click.echo(f"💰 Remaining allowance: {format_ton(remaining)}")


@main.command()
@click.argument("target")
@click.argument("amount")
@click.option("--request-id", default=None, help="Client request id (default: generated)")
@click.option("--contract", default=None, help="Contract address (default: env CONTRACT_ADDRESS)")
@click.option("--context", default=None, help="Opaque JSON context for the facilitator")
def pay(target: str, amount: str, request_id: Optional[str], contract: Optional[str], context: Optional[str]):
    """Pay AMOUNT TON to TARGET through the agent wallet."""
    coordinator = _coordinator()
    try:
        outcome = coordinator.execute_payment(
            target,
            amount,
            contract_address=contract,
            request_id=request_id,
            facilitator_context=_parse_context(context),
        )
    except TonPayError as exc:
        _fail(f"Payment failed: {exc}")
    _echo_outcome(outcome)


# ── Envelopes ─────────────────────────────────────────────────────

@main.group("envelope")
def envelope_group():
    """Shared budget envelopes."""
    pass


@envelope_group.command("create")
@click.argument("envelope_id")
@click.option("--budget", "budget_ton", required=True, help="Total budget per window (TON)")
@click.option("--window", "window_seconds", type=int, required=True, help="Window length in seconds")
def envelope_create(envelope_id: str, budget_ton: str, window_seconds: int):
    """Create an envelope."""
    coordinator = _coordinator()
    try:
        envelope = coordinator.create_envelope(envelope_id, positive_ton_to_nano(budget_ton), window_seconds)
    except TonPayError as exc:
        _fail(str(exc))
    click.echo(f"✓ Envelope created: {envelope.envelope_id}")
    click.echo(f"  Budget: {format_ton(envelope.total_budget_nano)} per {envelope.window_seconds}s")


@envelope_group.command("assign")
@click.argument("envelope_id")
@click.argument("agent_id")
def envelope_assign(envelope_id: str, agent_id: str):
    """Authorize AGENT_ID to spend from an envelope."""
    coordinator = _coordinator()
    try:
        envelope = coordinator.assign_agent(envelope_id, agent_id)
    except TonPayError as exc:
        _fail(str(exc))
    click.echo(f"✓ Agent {agent_id} assigned to {envelope.envelope_id}")
    click.echo(f"  Agents: {', '.join(envelope.agent_ids)}")


@envelope_group.command("show")
@click.argument("envelope_id", required=False)
def envelope_show(envelope_id: Optional[str]):
    """Show one envelope, or list all of them."""
    coordinator = _coordinator()
    if envelope_id is None:
        envelopes = coordinator.list_envelopes()
        if not envelopes:
            click.echo("No envelopes found.")
            return
        for env in envelopes:
            click.echo(f"  {env.envelope_id}: {format_ton(env.total_budget_nano)} / {env.window_seconds}s")
        return

    try:
        current = coordinator.envelope_allowance(envelope_id)
    except TonPayError as exc:
        _fail(str(exc))
    env = current.envelope
    click.echo(f"📊 Envelope {env.envelope_id}")
    click.echo(f"   Budget:    {format_ton(env.total_budget_nano)}")
    click.echo(f"   Spent:     {format_ton(env.spent_in_window_nano)}")
    click.echo(f"   Remaining: {format_ton(current.remaining_nano)}")
    click.echo(f"   Window:    {env.window_seconds}s, resets at {time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(env.window_ends_at))} UTC")
    click.echo(f"   Agents:    {', '.join(env.agent_ids) or '-'}")


@envelope_group.command("pay")
@click.argument("envelope_id")
@click.option("--agent", "agent_id", required=True, help="Agent id spending from the envelope")
@click.option("--target", required=True, help="Payment target address")
@click.option("--amount", required=True, help="Amount in TON")
@click.option("--request-id", default=None, help="Client request id (default: generated)")
@click.option("--context", default=None, help="Opaque JSON context for the facilitator")
def envelope_pay(
    envelope_id: str,
    agent_id: str,
    target: str,
    amount: str,
    request_id: Optional[str],
    context: Optional[str],
):
    """Pay from an envelope's shared budget."""
    coordinator = _coordinator()
    try:
        outcome = coordinator.execute_envelope_payment(
            envelope_id,
            agent_id,
            target,
            amount,
            request_id=request_id,
            facilitator_context=_parse_context(context),
        )
    except TonPayError as exc:
        _fail(f"Payment failed: {exc}")
    _echo_outcome(outcome)


# ── Approvals ─────────────────────────────────────────────────────

@main.group("approvals")
def approvals_group():
    """Over-limit approval requests."""
    pass


@approvals_group.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in ApprovalStatus]),
    default=None,
    help="Filter by status",
)
def approvals_list(status: Optional[str]):
    """List approval requests."""
    coordinator = _coordinator()
    records = coordinator.list_approvals(ApprovalStatus(status) if status else None)
    if not records:
        click.echo("No approval requests found.")
        return
    for r in records:
        request = f" req={r.request_id}" if r.request_id else ""
        click.echo(f"  {r.approval_id} [{r.status.value}] {format_ton(r.amount_nano)} → {r.target}{request}")


@approvals_group.command("show")
@click.argument("approval_id")
def approvals_show(approval_id: str):
    """Show one approval request."""
    coordinator = _coordinator()
    try:
        record = coordinator.get_approval(approval_id)
    except TonPayError as exc:
        _fail(str(exc))
    click.echo(json.dumps(record.to_dict(), indent=2))


def _decide(kind: str, approval_id: str, actor: str, chat_id: Optional[str]) -> None:
    coordinator = _coordinator()
    conversation = chat_id or coordinator.settings.approver_chat_id or ""
    try:
        if kind == "approve":
            record = coordinator.approve(approval_id, actor, conversation)
        else:
            record = coordinator.reject(approval_id, actor, conversation)
    except TonPayError as exc:
        _fail(f"Failed to {kind} request: {exc}")

    if kind == "approve":
        click.echo(f"✅ Approved and submitted by owner wallet {record.owner_wallet}. Ref: {approval_id}")
    else:
        click.echo(f"❌ Rejected request {approval_id}")


@main.command()
@click.argument("approval_id")
@click.option("--actor", default="cli", help="Identity recorded as the resolver")
@click.option("--chat-id", default=None, help="Approver conversation (default: env TELEGRAM_CHAT_ID)")
def approve(approval_id: str, actor: str, chat_id: Optional[str]):
    """Approve a pending request and submit it with the owner wallet."""
    _decide("approve", approval_id, actor, chat_id)


@main.command()
@click.argument("approval_id")
@click.option("--actor", default="cli", help="Identity recorded as the resolver")
@click.option("--chat-id", default=None, help="Approver conversation (default: env TELEGRAM_CHAT_ID)")
def reject(approval_id: str, actor: str, chat_id: Optional[str]):
    """Reject a pending request."""
    _decide("reject", approval_id, actor, chat_id)


@main.command()
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Number of records")
def requests(limit: int):
    """View the request audit log."""
    coordinator = _coordinator()
    records = coordinator.list_requests()[-limit:]
    if not records:
        click.echo("No payment requests found.")
        return
    for r in records:
        linked = f" ← {r.consumed_by_approval_id}" if r.consumed_by_approval_id else ""
        click.echo(f"  {r.request_id} [{r.status.value}] {r.amount_in_ton} TON → {r.target_address}{linked}")


# ── Monitoring ────────────────────────────────────────────────────

@main.command()
def poll():
    """Run one detection cycle."""
    coordinator = _coordinator(with_channel=True)
    loop = PollLoop(coordinator, coordinator.settings.poll_interval_seconds)
    result = loop.tick()
    for record in result.created:
        click.echo(f"⚠️  New approval request {record.approval_id}: {format_ton(record.amount_nano)} → {record.target}")
    if result.actions_handled:
        click.echo(f"Handled {result.actions_handled} decision(s).")
    if not result.ok:
        _fail("; ".join(result.errors))
    if not result.created and not result.actions_handled:
        click.echo("No new approval requests.")


@main.command()
def run():
    """Run the approval monitor until interrupted."""
    coordinator = _coordinator(with_channel=True)
    settings = coordinator.settings
    if coordinator.channel is None:
        _fail("TELEGRAM_BOT_TOKEN is required to run the approval monitor")
    if not settings.approver_chat_id:
        _fail("TELEGRAM_CHAT_ID is required to run the approval monitor")

    loop = PollLoop(coordinator, settings.poll_interval_seconds)
    stop = threading.Event()
    click.echo(f"🔭 Monitoring {settings.contract_address} every {settings.poll_interval_seconds:g}s (Ctrl+C to stop)")
    try:
        loop.run(stop)
    except KeyboardInterrupt:
        stop.set()
        click.echo("Stopped.")


@main.command()
@click.option("--request-id", default=None, help="Filter by request id")
@click.option("--approval-id", default=None, help="Filter by approval id")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Number of events")
def journal(request_id: Optional[str], approval_id: Optional[str], limit: int):
    """View the operator journal."""
    settings = Settings.from_env()
    events_journal = EventJournal(settings.journal_path, settings.journal_key_path)
    try:
        events = events_journal.read_events(request_id=request_id, approval_id=approval_id, limit=limit)
    except TonPayError as exc:
        _fail(str(exc))

    if not events:
        click.echo("No journal events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_ton(int(event.amount_nano))}" if event.amount_nano else ""
        target = f" → {event.target}" if event.target else ""
        ref = f" [{event.approval_id or event.request_id}]" if (event.approval_id or event.request_id) else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{ref}{amount}{target}{reason}")


# ── Local contract ────────────────────────────────────────────────

@main.group("local")
def local_group():
    """Local stand-in contract for development."""
    pass


@local_group.command("deploy")
@click.option("--owner", default=None, help="Owner address (default: from TONPAY_OWNER_KEY)")
@click.option("--agent", default=None, help="Agent address (default: from TONPAY_AGENT_KEY)")
@click.option("--daily-limit", required=True, help="Daily limit in TON")
def local_deploy(owner: Optional[str], agent: Optional[str], daily_limit: str):
    """Deploy a local spending-limit contract."""
    settings = Settings.from_env()
    try:
        owner = owner or (_wallet(settings.owner_key).address if settings.owner_key else None)
        agent = agent or (_wallet(settings.agent_key).address if settings.agent_key else None)
        if not owner or not agent:
            _fail("Owner and agent addresses are required (flags or TONPAY_OWNER_KEY/TONPAY_AGENT_KEY)")
        address = _local_chain(settings).deploy(owner, agent, positive_ton_to_nano(daily_limit))
    except (TonPayError, ValueError, RuntimeError) as exc:
        _fail(f"Failed to deploy contract: {exc}")
    click.echo(f"✓ Contract deployed: {address}")
    click.echo(f"  export CONTRACT_ADDRESS={address}")


@local_group.command("whitelist")
@click.argument("target")
@click.option("--remove", is_flag=True, help="Remove the target instead of adding it")
def local_whitelist(target: str, remove: bool):
    """Add or remove a whitelisted target (owner only)."""
    settings = Settings.from_env()
    try:
        wallet = _wallet(settings.owner_key)
        if wallet is None:
            _fail("TONPAY_OWNER_KEY is required")
        if not settings.contract_address:
            _fail("CONTRACT_ADDRESS is required")
        _local_chain(settings).update_whitelist(wallet, settings.contract_address, target, not remove)
    except (TonPayError, ValueError, RuntimeError) as exc:
        _fail(f"Failed to update whitelist: {exc}")
    click.echo(f"✓ {target} {'removed from' if remove else 'added to'} whitelist")


if __name__ == "__main__":
    main()
