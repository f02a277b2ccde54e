"""
WhatsApp Integration CLI

Command-line administration for the integration core.

Commands:
- init-db: Create the integration tables
- create-account: Create and provision an account for a tenant
- list-accounts: List a tenant's accounts
- connect: Start pairing (prints the QR payload)
- disconnect: Log an account out
- send-test: Queue a test message
- queue-stats: Show dispatch queue counters
- retry-failed: Re-enqueue a tenant's dead-lettered jobs
- set-plan: Change a tenant's rate plan
- reconcile-once: Run one reconciliation cycle
- policy-show: Show a tenant's auto-response policy and usage
- policy-toggle: Enable or disable auto-response
"""

import asyncio
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from wacore.settings import get_settings

app = typer.Typer(
    name="wa-cli",
    help="WhatsApp Integration CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from wacore.db import get_db as _get_db
    return next(_get_db())


def get_redis():
    """Get Redis client."""
    from wacore.redis import get_redis_client
    return get_redis_client()


def parse_uuid(value: str, label: str = "ID") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def build_account_service(db):
    from wa_integration.gateway import build_gateway
    from wa_integration.service.accounts import AccountService

    settings = get_settings()
    return AccountService.from_settings(db, build_gateway(settings), settings)


@app.command()
def init_db():
    """
    Create the integration tables that do not exist yet.
    """
    from wacore.db import get_engine
    from wa_integration.persistence.models import WhatsAppBase

    engine = get_engine()
    WhatsAppBase.metadata.create_all(engine)
    rprint(f"[green]Tables ready: {', '.join(sorted(WhatsAppBase.metadata.tables))}[/green]")


@app.command()
def create_account(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    display_name: str = typer.Argument(..., help="Account display name"),
):
    """
    Create an account and provision it on the gateway.

    The local account is kept even if provisioning fails.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    db = get_db()

    try:
        service = build_account_service(db)

        async def run():
            try:
                return await service.create_account(tenant_uuid, display_name)
            finally:
                await service.gateway.close()

        account = asyncio.run(run())

        if account.provisioning_error:
            rprint("[yellow]Account created locally, gateway provisioning failed:[/yellow]")
            rprint(f"  Error: {account.provisioning_error}")
        else:
            rprint("[green]Account created:[/green]")
        rprint(f"  ID: {account.id}")
        rprint(f"  Key: {account.account_key}")
        rprint(f"  Webhook: {service.webhook_url(account.account_key)}")

    finally:
        db.close()


@app.command()
def list_accounts(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
):
    """
    List a tenant's accounts.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    db = get_db()

    try:
        from wa_integration.persistence.repo import WhatsAppRepository

        accounts = WhatsAppRepository(db).list_accounts(tenant_uuid)
        if not accounts:
            rprint("[yellow]No accounts found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Accounts for tenant {tenant_id[:8]}...")
        table.add_column("ID", style="dim")
        table.add_column("Key")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Phone")
        table.add_column("Attention")

        for account in accounts:
            table.add_row(
                str(account.id)[:8] + "...",
                account.account_key,
                account.display_name,
                account.status,
                account.phone_identity or "-",
                "[red]yes[/red]" if account.needs_attention else "no",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def connect(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    account_id: str = typer.Argument(..., help="Account UUID"),
):
    """
    Start pairing for an account, or confirm it is already connected.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    account_uuid = parse_uuid(account_id, "account ID")
    db = get_db()

    try:
        from wa_integration.errors import IntegrationError

        service = build_account_service(db)

        async def run():
            try:
                return await service.connect(tenant_uuid, account_uuid)
            finally:
                await service.gateway.close()

        try:
            result = asyncio.run(run())
        except IntegrationError as e:
            rprint(f"[red]Connect failed: {e}[/red]")
            raise typer.Exit(1)

        if result.already_connected:
            rprint(f"[green]Already connected[/green] (state: {result.state})")
        else:
            rprint(f"[cyan]Pairing requested[/cyan] (state: {result.state})")
            if result.pairing_payload:
                rprint("  Scan this payload with WhatsApp:")
                rprint(f"  {result.pairing_payload[:120]}{'...' if len(result.pairing_payload) > 120 else ''}")

    finally:
        db.close()


@app.command()
def disconnect(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    account_id: str = typer.Argument(..., help="Account UUID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """
    Log an account out of WhatsApp.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    account_uuid = parse_uuid(account_id, "account ID")

    if not force and not typer.confirm(f"Disconnect account {account_id}?"):
        rprint("[yellow]Cancelled[/yellow]")
        raise typer.Exit(0)

    db = get_db()

    try:
        from wa_integration.errors import IntegrationError

        service = build_account_service(db)

        async def run():
            try:
                return await service.disconnect(tenant_uuid, account_uuid)
            finally:
                await service.gateway.close()

        try:
            account = asyncio.run(run())
        except IntegrationError as e:
            rprint(f"[red]Disconnect failed: {e}[/red]")
            raise typer.Exit(1)

        rprint(f"[green]Account {account.account_key} disconnected[/green]")

    finally:
        db.close()


@app.command()
def send_test(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    account_id: str = typer.Argument(..., help="Account UUID"),
    to: str = typer.Argument(..., help="Recipient phone number (digits)"),
    text: str = typer.Option("Hello from the WhatsApp integration!", help="Message text"),
):
    """
    Queue a test message through the dispatch queue.

    A running worker delivers it.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    account_uuid = parse_uuid(account_id, "account ID")
    db = get_db()

    try:
        from wa_integration.dispatch.queue import DispatchQueue
        from wa_integration.errors import AccountNotFound
        from wa_integration.service.messaging import MessagingService

        queue = DispatchQueue.from_settings(get_redis(), get_settings())
        try:
            job = MessagingService(db, queue).send_single(tenant_uuid, account_uuid, to, text)
        except AccountNotFound as e:
            rprint(f"[red]{e}[/red]")
            raise typer.Exit(1)

        rprint("[green]Message queued[/green]")
        rprint(f"  Job: {job.job_id}")
        rprint(f"  Message: {job.message_id}")

    finally:
        db.close()


@app.command()
def queue_stats():
    """
    Show dispatch queue counters.
    """
    from wa_integration.dispatch.queue import DispatchQueue

    stats = DispatchQueue.from_settings(get_redis(), get_settings()).get_queue_stats()

    table = Table(title="Dispatch Queue")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for name, value in stats.to_dict().items():
        table.add_row(name, str(value))
    console.print(table)


@app.command()
def retry_failed(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list dead letters"),
):
    """
    Re-enqueue a tenant's dead-lettered jobs with attempts reset.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")

    from wa_integration.dispatch.queue import DispatchQueue

    queue = DispatchQueue.from_settings(get_redis(), get_settings())
    dead = queue.list_dead_letters(tenant_uuid)

    if not dead:
        rprint("[green]No dead-lettered jobs[/green]")
        raise typer.Exit(0)

    table = Table(title=f"Dead letters for tenant {tenant_id[:8]}...")
    table.add_column("Job", style="dim")
    table.add_column("Recipient")
    table.add_column("Attempts", justify="right")
    table.add_column("Code")
    table.add_column("Error")
    for job in dead:
        table.add_row(
            str(job.job_id)[:8] + "...",
            job.recipient,
            str(job.attempts),
            job.last_error_code or "-",
            (job.last_error or "-")[:60],
        )
    console.print(table)

    if dry_run:
        raise typer.Exit(0)

    retried = queue.retry_failed_messages(tenant_uuid)
    rprint(f"[green]Re-enqueued {retried} jobs[/green]")


@app.command()
def set_plan(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    plan: str = typer.Argument(..., help="Rate plan (basic, pro, enterprise)"),
):
    """
    Change a tenant's send rate plan.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")

    from wa_integration.dispatch.rate_limit import TenantRateLimiter

    limiter = TenantRateLimiter(get_redis(), default_plan=get_settings().DEFAULT_RATE_PLAN)
    try:
        limiter.set_plan(tenant_uuid, plan)
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)

    usage = limiter.get_usage(tenant_uuid)
    rprint(f"[green]Plan set to {plan}[/green]")
    for window, limit in usage["limits"].items():
        rprint(f"  {window}: {usage['usage'][window]}/{limit}")


@app.command()
def reconcile_once():
    """
    Run one reconciliation cycle against the gateway and print the report.
    """
    db = get_db()

    try:
        from wa_integration.gateway import build_gateway
        from wa_integration.reconciler.service import ConnectionReconciler

        settings = get_settings()
        gateway = build_gateway(settings)
        reconciler = ConnectionReconciler.from_settings(db, gateway, settings)

        async def run():
            try:
                return await reconciler.poll_all()
            finally:
                await gateway.close()

        report = asyncio.run(run())

        rprint("[cyan]Reconciliation report:[/cyan]")
        rprint(f"  Accounts: {report.total}")
        rprint(f"  Polled: {report.polled}")
        rprint(f"  Skipped (fresh webhook): {report.skipped_fresh}")
        rprint(f"  Changed: {report.changed}")
        rprint(f"  Orphaned: {report.orphaned}")
        rprint(f"  Errors: {report.errors}")
        rprint(f"  Abandoned: {report.abandoned}")
        rprint(f"  Duration: {report.duration_seconds:.2f}s")

    finally:
        db.close()


@app.command()
def policy_show(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
):
    """
    Show a tenant's auto-response policy and usage.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    db = get_db()

    try:
        from wa_integration.policy.service import PolicyService

        service = PolicyService(db)
        policy = service.get_policy(tenant_uuid)
        stats = service.get_usage_stats(tenant_uuid)

        rprint(f"[cyan]Auto-response policy for tenant {tenant_id[:8]}...[/cyan]")
        rprint(f"  Enabled: {'[green]yes[/green]' if policy.enabled else '[red]no[/red]'}")
        rprint(f"  Mode: {policy.response_mode.value}")
        rprint(f"  Personality: {policy.personality.value}")
        rprint(f"  Model: {policy.model}")
        rprint(f"  Timezone: {policy.business_hours.timezone}")
        if policy.keywords:
            rprint(f"  Keywords: {', '.join(policy.keywords)}")

        table = Table(title="Usage")
        table.add_column("Quota")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("%", justify="right")
        rows = [
            ("tokens/day", stats["daily"]["tokens"]),
            ("conversations/day", stats["daily"]["conversations"]),
            ("tokens/month", stats["monthly"]["tokens"]),
        ]
        for label, entry in rows:
            table.add_row(
                label,
                str(entry["used"]),
                str(entry["limit"]) if entry["limit"] is not None else "-",
                f"{entry['percentage']:.1f}" if entry["percentage"] is not None else "-",
            )
        console.print(table)

    finally:
        db.close()


@app.command()
def policy_toggle(
    tenant_id: str = typer.Argument(..., help="Tenant UUID"),
    enable: Optional[bool] = typer.Option(None, "--enable/--disable", help="Target state (default: flip)"),
):
    """
    Enable or disable auto-response for a tenant.
    """
    tenant_uuid = parse_uuid(tenant_id, "tenant ID")
    db = get_db()

    try:
        from wa_integration.policy.service import PolicyService

        service = PolicyService(db)
        target = enable if enable is not None else not service.get_policy(tenant_uuid).enabled
        policy = service.toggle(tenant_uuid, target)
        state = "[green]enabled[/green]" if policy.enabled else "[red]disabled[/red]"
        rprint(f"Auto-response {state} for tenant {tenant_id[:8]}...")

    finally:
        db.close()


if __name__ == "__main__":
    app()
