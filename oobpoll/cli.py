from __future__ import annotations
import asyncio
import logging
from pathlib import Path
import typer
from rich.console import Console
from rich.logging import RichHandler
from .config import Settings
from .engine import PollingEngine
from .errors import OOBPollError
from .identity import CorrelationIdentity
from .models import Interaction, SessionInfo

app = typer.Typer(no_args_is_help=True)
console = Console()


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(message)s", datefmt="[%X]",
                        handlers=[RichHandler(console=console, rich_tracebacks=True)])


def show(interaction: Interaction, as_json: bool = False) -> None:
    if as_json:
        console.print_json(interaction.model_dump_json(by_alias=True, exclude_none=True))
        return
    proto = (interaction.protocol or "?").upper()
    extra = f" ({interaction.q_type})" if interaction.q_type else ""
    console.print(f"[bold green]{proto}[/]{extra} [bold]{interaction.full_id or interaction.unique_id}[/] "
                  f"from {interaction.remote_address or '-'} at {interaction.timestamp or '-'}")


async def watch_session(s: Settings, count: int, duration: float | None, as_json: bool,
                        session_file: Path | None) -> None:
    engine = PollingEngine(lambda i: show(i, as_json), settings=s,
                           on_error=lambda e: console.print(f"[yellow]{type(e).__name__}:[/] {e}"))
    info = None
    if session_file and session_file.exists():
        info = SessionInfo.model_validate_json(session_file.read_text())
    try:
        await engine.start(session_info=info)
        if session_file:
            session_file.write_text(engine.session_info(include_private_key=True).model_dump_json(indent=2))
        for _ in range(count):
            console.print(f"[cyan]probe:[/] {engine.derive_url()}")
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        await engine.stop()
        # a saved session stays registered so it can be resumed
        await engine.close(deregister=session_file is None)


@app.command()
def watch(
    server: str = typer.Option(None, help="Collaborator server URL"),
    token: str = typer.Option(None, help="Authorization token"),
    interval: int = typer.Option(None, help="Poll interval in milliseconds"),
    count: int = typer.Option(1, help="Number of probe hosts to print"),
    duration: float = typer.Option(None, help="Stop after this many seconds"),
    as_json: bool = typer.Option(False, "--json", help="Print interactions as JSON"),
    session_file: Path = typer.Option(None, help="Save/resume session info (contains the private key)"),
    log_level: str = typer.Option(None),
):
    s = Settings()
    if server:
        s.SERVER_URL = server
    if token:
        s.TOKEN = token
    if interval:
        s.POLL_INTERVAL_MS = interval
    setup_logging(log_level or s.LOG_LEVEL)
    console.rule("[bold cyan]oobpoll")
    console.print(f"Server: [bold]{s.SERVER_URL}[/] | interval: [bold]{s.POLL_INTERVAL_MS}ms[/]\n")
    try:
        asyncio.run(watch_session(s, count, duration, as_json, session_file))
    except KeyboardInterrupt:
        console.print("[bold]stopped")
    except OOBPollError as e:
        console.print(f"[bold red]{type(e).__name__}:[/] {e}")
        raise typer.Exit(code=1)


@app.command()
def url(
    session_file: Path = typer.Option(..., exists=True, readable=True),
    count: int = typer.Option(1),
):
    """Print fresh probe hosts for a saved session without polling."""
    info = SessionInfo.model_validate_json(session_file.read_text())
    ident = CorrelationIdentity(info.server_url, Settings().NONCE_LENGTH)
    ident.adopt(info.correlation_id, info.secret_key)
    for _ in range(count):
        console.print(ident.derive_url())


if __name__ == "__main__":
    app()
