"""CLI for the x402 payment gate.

Provides command-line access to verification, rollback and the processed
transaction store, plus the API server.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from x402_gate.config import Settings, get_settings
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.core.types import is_valid_reference
from x402_gate.monitoring.logging import setup_logging

T = TypeVar("T")

app = typer.Typer(
    name="x402-gate",
    help="x402 Payment Gate - on-chain payment verification with replay prevention",
    add_completion=False,
)

console = Console()


def load_settings() -> Settings:
    """Load settings, exiting with the validation errors if the policy is invalid."""
    try:
        return get_settings()
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            console.print(f"  {field}: {error['msg']}")
        raise typer.Exit(2)


def run_with_verifier(func: Callable[[PaymentVerifier], Awaitable[T]]) -> T:
    """Build a verifier from settings, run `func` with it, then close it."""
    settings = load_settings()
    setup_logging(settings)

    async def _run() -> T:
        verifier = await PaymentVerifier.create(settings)
        try:
            return await func(verifier)
        finally:
            await verifier.close()

    return asyncio.run(_run())


def _require_reference(tx: str) -> None:
    if not is_valid_reference(tx):
        console.print(
            f"[red]Error:[/red] Invalid transaction hash {tx!r}: "
            "must be 0x followed by 64 hex characters"
        )
        raise typer.Exit(1)


@app.command()
def verify(
    tx: str = typer.Argument(..., help="Payment transaction hash"),
) -> None:
    """Verify a payment and record it as used."""
    _require_reference(tx)

    async def _verify(verifier: PaymentVerifier) -> Any:
        return await verifier.verify(tx)

    result = run_with_verifier(_verify)
    if result.valid:
        console.print(f"[green]✓[/green] Payment accepted: {result.amount:f} USDC")
        return

    console.print(f"[red]✗[/red] Payment rejected ({result.reason.value}): {result.message}")
    if result.amount is not None:
        console.print(f"    [dim]Observed amount:[/dim] {result.amount:f} USDC")
    raise typer.Exit(1)


@app.command()
def rollback(
    tx: str = typer.Argument(..., help="Previously accepted transaction hash"),
) -> None:
    """Release an accepted payment so it can be verified again."""
    _require_reference(tx)

    async def _rollback(verifier: PaymentVerifier) -> bool:
        return await verifier.rollback(tx)

    if run_with_verifier(_rollback):
        console.print(f"[green]✓[/green] Released {tx.lower()}")
    else:
        console.print(f"[yellow]Not found:[/yellow] {tx.lower()} was not recorded as used")


@app.command()
def count() -> None:
    """Show the number of processed transactions."""

    async def _count(verifier: PaymentVerifier) -> int:
        return verifier.get_processed_count()

    console.print(f"Processed transactions: {run_with_verifier(_count)}")


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Forget every processed transaction (testing only)."""
    if not yes and not typer.confirm("This re-enables every used payment. Continue?"):
        raise typer.Exit(1)

    async def _clear(verifier: PaymentVerifier) -> None:
        await verifier.clear_all()

    run_with_verifier(_clear)
    console.print("[green]✓[/green] Processed transactions cleared")


@app.command()
def config() -> None:
    """Show the active configuration."""
    settings = load_settings()
    policy = settings.payment_policy()

    table = Table(title="x402 Payment Gate Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Wallet address", policy.recipient)
    table.add_row("Price", f"{policy.min_amount:f} USDC")
    table.add_row("Token contract", policy.token_address)
    table.add_row("Token decimals", str(policy.decimals))
    table.add_row("Network", settings.network_id)
    table.add_row("RPC URL", settings.base_rpc_url)
    table.add_row("Dedup backend", settings.dedup_backend)
    if settings.dedup_backend == "redis":
        table.add_row("Redis key", settings.dedup_redis_key)
        table.add_row("Atomic claims", str(settings.atomic_claims))
    else:
        table.add_row("Processed file", settings.processed_txs_path)

    console.print(table)


@app.command()
def serve() -> None:
    """Run the API server."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "x402_gate.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
    ),
) -> None:
    """x402 Payment Gate - on-chain payment verification with replay prevention."""
    if version:
        from x402_gate import __version__
        console.print(f"x402 Payment Gate v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
