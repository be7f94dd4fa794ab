"""CLI interface for wabridge.

Quick start:
    wabridge serve                          # Run the API (pairs on first start)
    wabridge status                         # Is the session ready?
    wabridge send 0512345678 "Hello"        # Send through a running server
    wabridge pairing --out qr.png           # Fetch the pairing QR remotely
    wabridge logout                         # Unlink the device (needs the secret)
    wabridge reset                          # Forget the stored session
"""

import asyncio
import logging
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from wabridge import __version__
from wabridge.config import Settings, get_settings
from wabridge.credentials import create_credential_store
from wabridge.errors import ConfigError, PersistenceError

app = typer.Typer(
    name="wabridge",
    help="Lightweight WhatsApp send API over a single persistent session",
    no_args_is_help=True,
)

console = Console()


def _load_settings(config: Path | None) -> Settings:
    try:
        return get_settings(config)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _default_url(settings: Settings) -> str:
    return f"http://127.0.0.1:{settings.port}"


@app.command()
def serve(
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
    host: str | None = typer.Option(None, "--host", help="Host to bind to"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    log_level: str | None = typer.Option(None, "--log-level", help="debug|info|warning|error"),
) -> None:
    """Run the HTTP API and keep the WhatsApp session alive."""
    import uvicorn

    from wabridge.web.server import build_app

    settings = _load_settings(config)
    if port is not None:
        settings.port = port
    if host is not None:
        settings.host = host
    if log_level is not None:
        settings.log_level = log_level
    _setup_logging(settings.log_level)

    if not settings.gateway.is_configured():
        console.print(
            "[yellow]Gateway credentials missing: set GREEN_API_INSTANCE_ID and "
            "GREEN_API_TOKEN (retrying until they are present)[/yellow]")

    url = f"http://{settings.host}:{settings.port}"
    console.print(Panel(
        f"[bold cyan]wabridge {__version__}[/bold cyan]\n\n"
        f"📡 API: {url}/api/\n"
        f"🔐 Session: {settings.session_name} ({settings.store.backend} store)\n\n"
        "[dim]Press Ctrl+C to stop[/dim]",
        title="🚀 Starting WhatsApp API",
        border_style="cyan",
    ))

    web_app = build_app(settings)
    uvicorn.run(web_app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


@app.command()
def status(
    url: str | None = typer.Option(None, "--url", help="Server base URL"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
) -> None:
    """Check whether a running server's session is ready."""
    base = url or _default_url(_load_settings(config))
    try:
        resp = httpx.get(f"{base}/api/status", timeout=10.0)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Could not reach {base}: {e}[/red]")
        raise typer.Exit(1)

    if data.get("isReady"):
        console.print("[green]✓[/green] WhatsApp session is ready")
    else:
        state = data.get("state", "unknown")
        console.print(f"[yellow]○[/yellow] Not ready ({state})")
        if data.get("pairingPending"):
            console.print("[dim]A pairing QR is waiting to be scanned[/dim]")
        raise typer.Exit(2)


@app.command()
def send(
    number: str = typer.Argument(..., help="Recipient phone number"),
    message: str = typer.Argument(..., help="Text to send"),
    url: str | None = typer.Option(None, "--url", help="Server base URL"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
) -> None:
    """Send a message through a running server."""
    base = url or _default_url(_load_settings(config))
    try:
        resp = httpx.post(
            f"{base}/api/send",
            json={"number": number, "message": message},
            timeout=120.0,
        )
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Could not reach {base}: {e}[/red]")
        raise typer.Exit(1)

    if data.get("success"):
        console.print(f"[green]✓ Sent to {number}[/green]")
    else:
        console.print(f"[red]✗ {data.get('message', 'Send failed')} (HTTP {resp.status_code})[/red]")
        raise typer.Exit(1)


@app.command()
def pairing(
    out: Path = typer.Option(Path("pairing-qr.png"), "--out", "-o", help="Where to save the QR image"),
    secret: str | None = typer.Option(None, "--secret", envvar="PAIRING_SECRET", help="Pairing secret"),
    url: str | None = typer.Option(None, "--url", help="Server base URL"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
) -> None:
    """Fetch the pending pairing challenge from a running server."""
    settings = _load_settings(config)
    base = url or _default_url(settings)
    token = secret or settings.pairing.secret
    try:
        resp = httpx.get(
            f"{base}/api/pairing",
            headers={"X-Pairing-Secret": token or ""},
            timeout=settings.pairing.wait_timeout + 10,
        )
    except httpx.HTTPError as e:
        console.print(f"[red]Could not reach {base}: {e}[/red]")
        raise typer.Exit(1)

    if resp.headers.get("content-type", "").startswith("image/png"):
        out.write_bytes(resp.content)
        console.print(f"[green]✓ QR saved to {out}[/green] - scan it from WhatsApp > Linked devices")
        return

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code == 200 and data.get("code"):
        console.print(f"Pairing code: [bold]{data['code']}[/bold]")
        return
    console.print(f"[red]✗ {data.get('message', 'No pairing challenge')} (HTTP {resp.status_code})[/red]")
    raise typer.Exit(1)


@app.command()
def logout(
    secret: str | None = typer.Option(None, "--secret", envvar="PAIRING_SECRET", help="Pairing secret"),
    url: str | None = typer.Option(None, "--url", help="Server base URL"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Unlink the WhatsApp device from a running server."""
    settings = _load_settings(config)
    base = url or _default_url(settings)
    if not yes:
        typer.confirm("Unlink WhatsApp? A new QR pairing will be required", abort=True)
    try:
        resp = httpx.post(
            f"{base}/api/logout",
            headers={"X-Pairing-Secret": secret or settings.pairing.secret},
            timeout=settings.gateway.query_timeout + 10,
        )
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Could not reach {base}: {e}[/red]")
        raise typer.Exit(1)

    if data.get("success"):
        console.print("[green]✓ Logged out[/green] - run 'wabridge pairing' to link again")
    else:
        console.print(f"[red]✗ {data.get('message', 'Logout failed')} (HTTP {resp.status_code})[/red]")
        raise typer.Exit(1)


@app.command()
def reset(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Delete the stored session credentials (forces a new QR pairing)."""
    settings = _load_settings(config)
    if not yes:
        typer.confirm(
            f"Delete stored credentials for '{settings.session_name}'?", abort=True)
    store = create_credential_store(settings.store)
    try:
        asyncio.run(store.delete(settings.session_name))
    except PersistenceError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Credentials for '{settings.session_name}' removed[/green]")


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"wabridge {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
