"""
openpay CLI: interactive Open Payments flows from the terminal.

Commands:
    openpay wallet          Resolve a wallet address
    openpay pay             Send a one-time payment
    openpay split           Send a split payment to several recipients
    openpay callback-hash   Compute the expected authorization callback hash
    openpay next-date       Show the next fire time for an ISO-8601 interval
    openpay audit           View the audit trail
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from .audit import AuditTrail
from .authorization import callback_hash
from .client import OpenPaymentsClient
from .clock import isoformat, parse_datetime
from .config import load_config
from .duration import add_duration
from .errors import OpenPaymentsError
from .money import format_money
from .one_time import OneTimePaymentOrchestrator
from .split import AllocationKind, ExecutionConfig, Recipient, SplitPaymentOrchestrator

AUDIT_PATH_ENV = "OPENPAY_AUDIT_PATH"


def _client() -> OpenPaymentsClient:
    return OpenPaymentsClient(load_config())


def _audit_trail() -> AuditTrail:
    override = os.getenv(AUDIT_PATH_ENV)
    return AuditTrail(Path(override)) if override else AuditTrail()


def _fail(message: str):
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _prompt_callback() -> tuple[str, Optional[str]]:
    interact_ref = click.prompt("Interaction reference (interact_ref from the callback URL)")
    received_hash = click.prompt("Callback hash (blank to skip)", default="", show_default=False)
    return interact_ref.strip(), received_hash.strip() or None


def parse_recipient(value: str) -> Recipient:
    """Parse 'URL:KIND[:VALUE[:PRIORITY]]'. The URL may itself contain colons."""
    for kind in AllocationKind:
        marker = f":{kind.value}"
        pos = value.rfind(marker)
        end = pos + len(marker)
        if pos > 0 and (end == len(value) or value[end] == ":"):
            extra = value[end + 1:].split(":") if end < len(value) else []
            data = {"wallet_url": value[:pos], "type": kind.value}
            if extra and extra[0]:
                data["value"] = extra[0]
            if len(extra) > 1 and extra[1]:
                data["priority"] = int(extra[1])
            return Recipient.from_dict(data)
    raise click.BadParameter(f"Expected URL:KIND[:VALUE[:PRIORITY]], got {value!r}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log protocol activity to stderr")
def main(verbose: bool):
    """openpay: Open Payments orchestration from the command line."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@main.command()
@click.argument("url")
def wallet(url: str):
    """Resolve a wallet address and show its servers and asset."""
    try:
        with _client() as client:
            address = client.get_wallet_address(url)
    except (OpenPaymentsError, ValueError) as e:
        _fail(f"Failed to resolve wallet: {e}")

    click.echo(f"✅ {address.id}")
    if address.public_name:
        click.echo(f"   Name:     {address.public_name}")
    click.echo(f"   Asset:    {address.asset_code} (scale {address.asset_scale})")
    click.echo(f"   Auth:     {address.auth_server}")
    click.echo(f"   Resource: {address.resource_server}")


@main.command()
@click.option("--from", "sender", required=True, help="Sender wallet address URL")
@click.option("--to", "receiver", required=True, help="Receiver wallet address URL")
@click.option("--amount", required=True, help="Amount in the receiver's minor units")
@click.option("--description", default=None, help="Payment description")
def pay(sender: str, receiver: str, amount: str, description: Optional[str]):
    """Send a one-time payment (interactive authorization)."""
    try:
        with _client() as client:
            orchestrator = OneTimePaymentOrchestrator(client, audit=_audit_trail())
            payment = orchestrator.prepare(sender, receiver, amount, description)
            quote = payment.prepared.quote
            click.echo(f"💸 Payment {payment.id}")
            click.echo(f"   Debit:   {format_money(quote.debit_amount)}")
            click.echo(f"   Receive: {format_money(quote.receive_amount)}")
            click.echo(f"\n🔐 Approve the payment at:\n   {payment.authorization_url}\n")
            interact_ref, received_hash = _prompt_callback()
            payment = orchestrator.complete(payment.id, interact_ref, received_hash)
    except (OpenPaymentsError, ValueError) as e:
        _fail(f"Payment failed: {e}")

    leg = payment.leg
    click.echo(f"✅ Payment completed: {leg.outgoing_payment_id}")
    click.echo(f"   Debited: {format_money(leg.debit_amount)}")
    if not leg.settlement_confirmed:
        click.echo(f"   ⚠️  Settlement unconfirmed: {leg.note}")


@main.command()
@click.option("--from", "sender", required=True, help="Sender wallet address URL")
@click.option("--recipient", "recipients", multiple=True, required=True,
              help="URL:KIND[:VALUE[:PRIORITY]], KIND is fixed, percentage or remaining")
@click.option("--total", default=None, help="Total amount (required for percentage/remaining)")
@click.option("--sequential", is_flag=True, default=False, help="Pay recipients one at a time")
@click.option("--stop-on-error", is_flag=True, default=False, help="Stop after the first failure")
@click.option("--max-concurrent", type=int, default=5, help="Parallel batch size")
def split(
    sender: str,
    recipients: tuple[str, ...],
    total: Optional[str],
    sequential: bool,
    stop_on_error: bool,
    max_concurrent: int,
):
    """Send a split payment (interactive authorization)."""
    try:
        parsed = [parse_recipient(r) for r in recipients]
        execution = ExecutionConfig(
            parallel=not sequential,
            stop_on_error=stop_on_error,
            max_concurrent=max_concurrent,
        )
        with _client() as client:
            orchestrator = SplitPaymentOrchestrator(client, audit=_audit_trail())
            payment = orchestrator.create_split_payment(sender, parsed, total, execution)
            click.echo(f"💸 Split payment {payment.id} ({len(parsed)} recipients, total {payment.grant_total})")
            for recipient, amount in zip(payment.recipients, payment.amounts):
                click.echo(f"   {recipient.wallet_url}: {amount}")
            click.echo(f"\n🔐 Approve the payment at:\n   {payment.authorization_url}\n")
            interact_ref, received_hash = _prompt_callback()
            payment = orchestrator.complete_authorization(payment.id, interact_ref, received_hash)
    except (OpenPaymentsError, ValueError) as e:
        _fail(f"Split payment failed: {e}")

    icon = "✅" if payment.failed == 0 else "⚠️ "
    click.echo(f"{icon} {payment.phase.value}: {payment.successful} succeeded, {payment.failed} failed")
    for result in payment.results:
        detail = result.leg.outgoing_payment_id if result.leg else result.error
        click.echo(f"   {result.status.value:9} {result.wallet_url} {result.amount} {detail}")


@main.command("callback-hash")
@click.option("--nonce", required=True, help="Nonce sent with the grant request")
@click.option("--interact-ref", required=True, help="Interaction reference from the callback")
def callback_hash_command(nonce: str, interact_ref: str):
    """Compute the hash an authorization callback must carry."""
    click.echo(callback_hash(nonce, interact_ref))


@main.command("next-date")
@click.argument("interval")
@click.option("--from", "start", default=None, help="ISO-8601 start time (default: now)")
def next_date(interval: str, start: Optional[str]):
    """Show the next fire time for an ISO-8601 interval."""
    try:
        base = parse_datetime(start) if start else datetime.now().astimezone()
        click.echo(isoformat(add_duration(base, interval)))
    except (OpenPaymentsError, ValueError) as e:
        _fail(str(e))


@main.command()
@click.option("--operation-id", default=None, help="Filter by operation ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(operation_id: Optional[str], limit: int):
    """View the audit trail."""
    try:
        events = _audit_trail().read_events(operation_id=operation_id, limit=limit)
    except RuntimeError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount is not None else ""
        asset = f" {event.asset_code}" if event.asset_code and amount else ""
        counterparty = f" → {event.counterparty}" if event.counterparty else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        op = f" [{event.operation_id}]" if event.operation_id and not operation_id else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{asset}{counterparty}{op}{reason}")


if __name__ == "__main__":
    main()
