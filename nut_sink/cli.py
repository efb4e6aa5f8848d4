"""nut-sink CLI - serve the donation endpoint and maintain the ledger."""

import asyncio
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import MaintenanceConfig, load_maintenance_config
from .mint import Mint
from .store import LedgerStore
from .types import PENDING, SPENT, UNSPENT, MintError, NutSinkError
from .wallet import Wallet

app = typer.Typer(
    name="nut-sink",
    help="nut-sink - Cashu donation sink",
    rich_markup_mode="markdown",
)
console = Console()


def handle_error(e: Exception) -> None:
    """Print a failure as a single red line."""
    if isinstance(e, MintError):
        console.print(f"[red]❌ Mint error: {e}[/red]")
    elif isinstance(e, NutSinkError):
        console.print(f"[red]❌ {e}[/red]")
    else:
        console.print(f"[red]❌ Error: {e}[/red]")


def _load_config() -> MaintenanceConfig:
    try:
        return load_maintenance_config()
    except NutSinkError as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def refresh(
    mint_url: Annotated[Optional[str], typer.Argument(help="Mint URL")] = None,
    unit: Annotated[Optional[str], typer.Argument(help="Currency unit (sat, usd, ...)")] = None,
    restore: Annotated[
        bool,
        typer.Option("--restore", help="Restore proofs and derivation counters from the mint first"),
    ] = False,
    list_wallets: Annotated[
        bool, typer.Option("--list", "-l", help="List all known wallets")
    ] = False,
) -> None:
    """Reconcile a wallet's proof states with its mint."""
    config = _load_config()

    if not list_wallets and (mint_url is None or unit is None):
        console.print("[red]❌ MINT_URL and UNIT are required unless --list is given[/red]")
        raise typer.Exit(1)

    async def _list() -> None:
        async with LedgerStore(config.database_path) as store:
            wallets = await store.list_wallets()

        if not wallets:
            console.print("[yellow]No wallets found[/yellow]")
            return

        table = Table(title="Wallets")
        table.add_column("Mint", style="cyan")
        table.add_column("Unit", style="magenta")
        table.add_column("Unspent", style="green", justify="right")
        table.add_column("Pending", style="yellow", justify="right")
        table.add_column("Spent", style="dim", justify="right")
        for wallet_id, totals in sorted(wallets.items()):
            table.add_row(
                wallet_id.mint_url,
                wallet_id.unit,
                str(totals[UNSPENT]),
                str(totals[PENDING]),
                str(totals[SPENT]),
            )
        console.print(table)

    async def _refresh() -> None:
        assert mint_url is not None and unit is not None
        async with (
            LedgerStore(config.database_path) as store,
            Mint(mint_url, timeout=config.mint_timeout) as mint,
        ):
            wallet = Wallet.from_seed(
                config.seed_phrase, mint_url, unit, store, mint=mint, timeout=config.mint_timeout
            )
            console.print(f"[blue]Refreshing {wallet.wallet_id}...[/blue]")
            before = await wallet.get_balance()

            if restore:
                restored = await wallet.restore()
                console.print(
                    f"[green]✅ Restored {restored.recovered_proofs} proofs "
                    f"({restored.recovered_amount} {unit}) from {restored.keysets} keysets[/green]"
                )
                for keyset_id, counter in (restored.counters or {}).items():
                    console.print(f"[dim]   keyset {keyset_id}: counter {counter}[/dim]")

            report = await wallet.reconcile()
            after = await wallet.get_balance()

        console.print(
            f"[green]✅ Checked {report.checked} proofs: {report.marked_spent} spent, "
            f"{report.marked_unspent} released, {report.still_pending} pending at mint[/green]"
        )
        console.print(f"Balance: {before} → {after} {unit}")

    try:
        asyncio.run(_list() if list_wallets else _refresh())
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def pending(
    older_than: Annotated[
        Optional[float],
        typer.Option("--older-than", help="Minimum age in seconds (default: PENDING_STALE_SECONDS)"),
    ] = None,
) -> None:
    """List proofs stuck in PENDING."""
    config = _load_config()
    age = config.pending_stale_seconds if older_than is None else older_than

    async def _pending() -> None:
        async with LedgerStore(config.database_path) as store:
            proofs = await store.list_stale_pending(age)

        if not proofs:
            console.print(f"[green]No proofs pending for more than {age:g}s[/green]")
            return

        table = Table(title=f"Proofs pending for more than {age:g}s")
        table.add_column("Mint", style="cyan")
        table.add_column("Unit", style="magenta")
        table.add_column("Keyset", style="dim")
        table.add_column("Amount", style="yellow", justify="right")
        for proof in proofs:
            table.add_row(proof["mint"], proof["unit"], proof["id"], str(proof["amount"]))
        console.print(table)
        console.print("[dim]Run `nut-sink refresh <mint> <unit>` to reconcile them[/dim]")

    try:
        asyncio.run(_pending())
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 8000,
) -> None:
    """Run the donation endpoint."""
    import uvicorn

    from .app import create_app

    console.print(f"[blue]Serving donations on http://{host}:{port}[/blue]")
    uvicorn.run(create_app(), host=host, port=port)


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
