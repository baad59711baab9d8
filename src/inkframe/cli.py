"""Typer CLI for Inkframe."""

import asyncio

import typer
from rich.console import Console

app = typer.Typer(name="inkframe", help="Inkframe: prompt-to-comic generation service")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Inkframe API server."""
    import uvicorn
    from inkframe.app import create_app

    console.print(f"[bold green]Starting Inkframe on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Inkframe server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command("issue-token")
def issue_token(
    user_id: str = typer.Argument(..., help="User id to embed in the session token"),
):
    """Mint a bearer token for a user (development and operations)."""
    from inkframe.common.security import issue_user_token

    console.print(issue_user_token(user_id))


async def _with_db(action):
    from inkframe.deps import get_db

    db = get_db()
    await db.init()
    await db.create_all()
    try:
        return await action()
    finally:
        await db.close()


@app.command()
def credits(
    user_id: str = typer.Argument(..., help="User id"),
):
    """Show a user's remaining weekly generations."""
    from inkframe.deps import get_quota_ledger

    status = asyncio.run(_with_db(lambda: get_quota_ledger().peek(user_id)))
    reset = status.reset_at.isoformat() if status.reset_at else "no active window"
    console.print(f"[bold]{status.remaining}[/bold] of {status.limit} remaining (resets: {reset})")


@app.command("sweep-leases")
def sweep_leases():
    """Delete expired idempotency leases and stale burst windows."""
    from inkframe.deps import get_lease_store, get_quota_ledger

    async def _sweep() -> tuple[int, int]:
        leases = await get_lease_store().sweep_expired()
        windows = await get_quota_ledger().sweep_burst_windows()
        return leases, windows

    leases, windows = asyncio.run(_with_db(_sweep))
    console.print(
        f"[bold green]Swept[/bold green] {leases} expired leases, {windows} burst windows"
    )


if __name__ == "__main__":
    app()
