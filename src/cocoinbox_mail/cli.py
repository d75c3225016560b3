"""Command-line interface for the Cocoinbox mail service.

Manage outbound SMTP domains and send one-off messages directly from the
command line without going through the HTTP API.

Usage:
    cocoinbox-mail serve
    cocoinbox-mail init-db
    cocoinbox-mail domains add --host smtp.relay.example --port 465 --secure \\
        --username mailer --password secret --from no-reply@relay.example --limit 100
    cocoinbox-mail domains list
    cocoinbox-mail domains usage
    cocoinbox-mail send --user u1 --to dest@example.com --subject Hi --text Hello

Every command reads the same settings as the server (``--config`` or
``COCO_CONFIG``, then environment variables).
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite
import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from cocoinbox_mail.config import MailSettings, load_settings
from cocoinbox_mail.delivery import MailService
from cocoinbox_mail.errors import MailServiceError
from cocoinbox_mail.models import DomainCreate, MailUser, OutgoingMessage
from cocoinbox_mail.persistence import WINDOW_SECONDS

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _service(ctx: click.Context) -> MailService:
    settings: MailSettings = ctx.obj["settings"]
    return MailService(settings)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: COCO_CONFIG or config.ini).")
@click.version_option(package_name="cocoinbox-mail")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """Cocoinbox outbound mail service."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from cocoinbox_mail.logger import configure_logging
    from cocoinbox_mail.server import build_app

    settings: MailSettings = ctx.obj["settings"]
    configure_logging()
    host = host or settings.http_host
    port = port or settings.http_port

    console.print("\n[bold cyan]Starting Cocoinbox mail service[/bold cyan]")
    console.print(f"  DB:      {settings.db_path}")
    console.print(f"  Listen:  {host}:{port}")
    console.print()
    uvicorn.run(build_app(settings), host=host, port=port)


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema and load domains from config."""
    service = _service(ctx)
    run_async(service.init())
    print_success(f"Database ready at {service.settings.db_path}")


@main.group()
def domains() -> None:
    """Manage outbound SMTP domains."""


@domains.command("add")
@click.option("--id", "domain_id", default=None, help="Domain id (generated when omitted).")
@click.option("--host", required=True, help="SMTP server hostname.")
@click.option("--port", type=int, required=True, help="SMTP server port.")
@click.option("--secure/--no-secure", default=False, help="Use implicit TLS.")
@click.option("--username", required=True, help="SMTP username.")
@click.option("--password", required=True, help="SMTP password.")
@click.option("--from", "from_addr", required=True, help="Default sender address.")
@click.option("--limit", type=int, required=True, help="Maximum sends per hour.")
@click.option("--order", type=int, default=None, help="Priority, lower first (default: last).")
@click.pass_context
def domains_add(ctx: click.Context, domain_id: Optional[str], host: str, port: int, secure: bool,
                username: str, password: str, from_addr: str, limit: int, order: Optional[int]) -> None:
    """Register a new SMTP domain."""
    try:
        payload = DomainCreate(
            id=domain_id,
            host=host,
            port=port,
            secure=secure,
            username=username,
            password=password,
            from_addr=from_addr,
            limit=limit,
            order=order,
        )
    except ValidationError as e:
        print_error(f"Invalid domain: {e}")
        sys.exit(1)

    service = _service(ctx)

    async def _add():
        await service.init()
        return await service.allocator.add_domain(payload)

    try:
        domain = run_async(_add())
    except aiosqlite.IntegrityError:
        print_error(f"Domain '{payload.id}' already exists")
        sys.exit(1)
    print_success(f"Domain '{domain.id}' added (order {domain.order}, limit {domain.limit}/h)")


@domains.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_list(ctx: click.Context, as_json: bool) -> None:
    """List SMTP domains in priority order."""
    service = _service(ctx)

    async def _list():
        await service.persistence.init_db()
        return await service.allocator.list_domains_by_priority()

    items = run_async(_list())
    if as_json:
        print_json([d.public_dict() for d in items])
        return
    if not items:
        console.print("[dim]No domains configured.[/dim]")
        return

    table = Table(title="SMTP Domains")
    table.add_column("Order", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Host")
    table.add_column("Port", justify="right")
    table.add_column("TLS")
    table.add_column("From")
    table.add_column("Limit/h", justify="right")
    for d in items:
        table.add_row(
            str(d.order),
            d.id,
            d.host,
            str(d.port),
            "[green]yes[/green]" if d.secure else "no",
            d.from_addr,
            str(d.limit),
        )
    console.print(table)


@domains.command("usage")
@click.pass_context
def domains_usage(ctx: click.Context) -> None:
    """Show the current window of every domain."""
    service = _service(ctx)

    async def _usage():
        await service.persistence.init_db()
        items = await service.allocator.list_domains_by_priority()
        return [(d, await service.allocator.get_usage(d.id)) for d in items]

    rows = run_async(_usage())
    if not rows:
        console.print("[dim]No domains configured.[/dim]")
        return

    now = datetime.now(timezone.utc).timestamp()
    table = Table(title="SMTP Domain Usage")
    table.add_column("ID", style="cyan")
    table.add_column("Sent", justify="right")
    table.add_column("Limit/h", justify="right")
    table.add_column("Window start")
    for domain, usage in rows:
        if usage is None:
            table.add_row(domain.id, "0", str(domain.limit), "[dim]never used[/dim]")
            continue
        expired = now - usage.window_start >= WINDOW_SECONDS
        started = datetime.fromtimestamp(usage.window_start, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        count = "0" if expired else str(usage.count)
        style = "red" if not expired and usage.count >= domain.limit else "green"
        table.add_row(domain.id, f"[{style}]{count}[/{style}]", str(domain.limit),
                      f"{started} (expired)" if expired else started)
    console.print(table)


@main.command("send")
@click.option("--user", "user_id", required=True, help="Sending user id.")
@click.option("--role", "roles", multiple=True, help="User role (repeatable), e.g. 'pro'.")
@click.option("--to", required=True, help="Recipient address.")
@click.option("--subject", required=True, help="Message subject.")
@click.option("--text", default=None, help="Plain text body.")
@click.option("--html", default=None, help="HTML body.")
@click.pass_context
def send(ctx: click.Context, user_id: str, roles: tuple[str, ...], to: str, subject: str,
         text: Optional[str], html: Optional[str]) -> None:
    """Send one message through the delivery policy."""
    service = _service(ctx)
    user = MailUser(id=user_id, roles=list(roles))
    message = OutgoingMessage(to=to, subject=subject, text=text, html=html)

    async def _send():
        await service.init()
        try:
            return await service.send_email(user, message)
        finally:
            await service.pool.close_all()

    try:
        delivered = run_async(_send())
    except MailServiceError as e:
        print_error(f"{e} ({e.code})")
        sys.exit(1)
    print_success(f"Sent via {delivered['strategy']}"
                  + (f" (domain {delivered['domain_id']})" if delivered.get("domain_id") else ""))


if __name__ == "__main__":
    main()
