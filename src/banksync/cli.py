"""
banksync CLI — command-line interface.

Usage:
    banksync connect --provider mock
    banksync sync --config banksync.yaml
    banksync transactions ACCOUNT_ID --days 7
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from collections.abc import Coroutine
from datetime import date, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from banksync import __version__
from banksync.errors import BankSyncError
from banksync.models.banking import DataSource

if TYPE_CHECKING:
    from banksync.service import BankSyncService

T = TypeVar("T")

app = typer.Typer(
    name="banksync",
    help="banksync — connect a bank account and sync its data",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

CONFIG_OPTION = typer.Option("banksync.yaml", "--config", "-c", help="Path to config file")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]banksync[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
) -> None:
    """banksync — Open Banking accounts, balances and transactions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_service(config: str) -> BankSyncService:
    from banksync.service import BankSyncService

    config_path = config if Path(config).exists() else None
    return BankSyncService.from_config(config_path)


def _run(service: BankSyncService, work: Coroutine[Any, Any, T]) -> T:
    """Run ``work`` to completion, close the service, and map errors to exit code 1."""

    async def runner() -> T:
        try:
            return await work
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except BankSyncError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1) from e


def _source_note(source: DataSource) -> None:
    if source == DataSource.SYNTHETIC:
        console.print("[yellow]Showing synthetic sample data (sandbox returned nothing usable)[/yellow]")
    elif source == DataSource.CACHE:
        console.print("[yellow]Bank unreachable; showing cached data[/yellow]")


def _require_connection(service: BankSyncService) -> None:
    if not service.is_connected():
        console.print("[red]Not connected.[/red] Run [bold]banksync connect[/bold] first.")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Connection commands
# ---------------------------------------------------------------------------


@app.command()
def providers(config: str = CONFIG_OPTION) -> None:
    """List banks available for connection."""
    service = _load_service(config)

    table = Table(title=f"Providers ({service.config.provider.environment})")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Country")
    for provider in service.providers():
        table.add_row(provider.id, provider.name, provider.country)
    console.print(table)


@app.command()
def connect(
    provider: str = typer.Option("mock", "--provider", "-p", help="Provider ID (see `banksync providers`)"),
    no_browser: bool = typer.Option(
        False,
        "--no-browser",
        help="Print the authorization URL and paste the redirect URL instead of opening a browser",
    ),
    timeout: float = typer.Option(300, "--timeout", help="Seconds to wait for the browser redirect"),
    config: str = CONFIG_OPTION,
) -> None:
    """Connect a bank account (OAuth2 authorization with PKCE)."""
    from banksync.auth.oauth2 import OAuthCallbackServer

    service = _load_service(config)
    console.print(Panel.fit(
        f"[bold blue]banksync[/bold blue] — Connect [bold]{provider}[/bold]",
        subtitle=f"v{__version__}",
    ))

    server: OAuthCallbackServer | None = None
    if not no_browser:
        try:
            server = OAuthCallbackServer.from_redirect_uri(service.config.provider.redirect_uri)
        except ValueError:
            console.print("[dim]Redirect URI is not a local address; falling back to manual paste[/dim]")

    url = service.connect(provider)

    if server is None:
        console.print("Open this URL in a browser and authorize access:\n")
        console.print(url, soft_wrap=True)
        callback_url = typer.prompt("\nPaste the full redirect URL")
        state = _run(service, service.complete_connection(callback_url.strip()))
    else:

        async def via_browser() -> Any:
            server.start()
            try:
                webbrowser.open(url)
                console.print(f"[dim]Waiting for the redirect on {server.get_redirect_uri()} ...[/dim]")
                callback = await server.wait_for_callback(timeout=timeout)
            finally:
                server.stop()
            return await service.complete_connection(callback)

        try:
            state = _run(service, via_browser())
        except TimeoutError:
            console.print("[red]Timed out waiting for authorization.[/red]")
            raise typer.Exit(1) from None

    console.print(f"[green]✓[/green] Connected ({state.value})")


@app.command()
def status(config: str = CONFIG_OPTION) -> None:
    """Show connection state. Makes no network calls."""
    service = _load_service(config)
    tokens = service.tokens

    table = Table(title="Connection Status", show_lines=True)
    table.add_column("Item", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Environment", service.config.provider.environment)
    table.add_row("Connected", "[green]yes[/green]" if service.is_connected() else "[red]no[/red]")
    table.add_row("Token state", tokens.state.value)
    if tokens.token is not None:
        table.add_row("Expires in", f"{tokens.token.seconds_remaining():.0f}s")
    table.add_row("Refresh failures", str(tokens.consecutive_refresh_failures))
    table.add_row("Synthetic fallback", "on" if service.client.synthetic_enabled else "off")
    console.print(table)

    if tokens.consecutive_refresh_failures:
        console.print("[yellow]Token refresh is failing; you may need to reconnect.[/yellow]")


@app.command()
def disconnect(
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    config: str = CONFIG_OPTION,
) -> None:
    """Forget stored tokens and cached bank data."""
    if not yes and not typer.confirm("Remove stored tokens and cached data?"):
        raise typer.Exit()
    service = _load_service(config)
    service.disconnect()
    console.print("[green]✓[/green] Disconnected")


@app.command(name="test")
def test_connection(config: str = CONFIG_OPTION) -> None:
    """Check that the Data API answers with the stored credentials."""
    service = _load_service(config)
    result = _run(service, service.test_connection())
    if result["connected"]:
        details = result["details"]
        console.print(
            f"[green]✓[/green] Connected: {details['accounts_count']} account(s), "
            f"first: {details['first_account']}"
        )
    else:
        console.print(f"[red]✗ Connection failed:[/red] {escape(str(result['error']))}")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Data commands
# ---------------------------------------------------------------------------


@app.command()
def accounts(config: str = CONFIG_OPTION) -> None:
    """List connected accounts."""
    service = _load_service(config)
    _require_connection(service)
    result = _run(service, service.client.get_accounts())

    table = Table(title="Accounts")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Currency")
    table.add_column("Provider")
    for account in result.items:
        table.add_row(
            account.account_id,
            account.display_name,
            account.account_type.value,
            account.currency,
            account.provider_name,
        )
    console.print(table)
    _source_note(result.source)


@app.command()
def balances(config: str = CONFIG_OPTION) -> None:
    """Show current balances for all accounts."""
    service = _load_service(config)
    _require_connection(service)
    result = _run(service, service.client.get_balances())

    table = Table(title="Balances")
    table.add_column("Account", style="bold cyan")
    table.add_column("Current", justify="right")
    table.add_column("Available", justify="right")
    table.add_column("Currency")
    for balance in result.items:
        table.add_row(
            balance.account_id,
            f"{balance.current:,.2f}",
            f"{balance.available:,.2f}",
            balance.currency,
        )
    console.print(table)
    _source_note(result.source)


@app.command()
def transactions(
    account_id: str = typer.Argument(..., help="Account ID (see `banksync accounts`)"),
    days: int = typer.Option(30, "--days", "-d", help="How many days back to fetch"),
    config: str = CONFIG_OPTION,
) -> None:
    """Show recent transactions for one account."""
    service = _load_service(config)
    _require_connection(service)
    from_date = date.today() - timedelta(days=days)
    result = _run(service, service.client.get_transactions(account_id, from_date))

    table = Table(title=f"Transactions — {account_id} (last {days} days)")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    for txn in sorted(result.items, key=lambda t: t.timestamp, reverse=True):
        style = "red" if txn.is_debit else "green"
        table.add_row(
            txn.timestamp.strftime("%Y-%m-%d"),
            txn.merchant_name or txn.description,
            txn.category,
            f"[{style}]{txn.amount:,.2f} {txn.currency}[/{style}]",
        )
    console.print(table)
    _source_note(result.source)


@app.command()
def sync(config: str = CONFIG_OPTION) -> None:
    """Run one full sync of accounts, balances and transactions."""
    service = _load_service(config)
    _require_connection(service)

    with console.status("[bold green]Syncing...[/bold green]"):
        result = _run(service, service.sync_all())

    table = Table(title="Sync Summary", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Accounts", str(len(result.accounts)))
    table.add_row("Balances", str(len(result.balances)))
    table.add_row("Transactions", str(result.transaction_count))
    table.add_row("Failed accounts", str(len(result.failed_accounts)))
    console.print(table)

    for account_id, error in result.failed_accounts.items():
        console.print(f"  [red]✗[/red] {account_id}: {error}")
    synthetic = sorted(key for key, source in result.sources.items() if source == DataSource.SYNTHETIC)
    if synthetic:
        console.print(f"[yellow]Synthetic data used for: {', '.join(synthetic)}[/yellow]")


@app.command()
def watch(
    interval: int = typer.Option(None, "--interval", "-i", help="Minutes between syncs (overrides config)"),
    config: str = CONFIG_OPTION,
) -> None:
    """Sync now and then periodically until interrupted (Ctrl-C)."""
    service = _load_service(config)
    _require_connection(service)
    scheduler = service.scheduler
    if interval:
        scheduler.update_config(interval_minutes=interval)

    async def run_forever() -> None:
        await scheduler.start()
        console.print(
            f"[green]✓[/green] Syncing every {scheduler.settings.interval_minutes} minute(s). "
            "Press Ctrl-C to stop."
        )
        while scheduler.is_running:
            await asyncio.sleep(1)

    try:
        _run(service, run_forever())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


if __name__ == "__main__":
    app()
