"""Command-line interface for the ReelVault client and server."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from reelvault.common.constants import DEFAULT_PART_SIZE, DEFAULT_SERVER_PORT

app = typer.Typer(
    name="reelvault",
    help="ReelVault - video library uploads with per-user storage quotas",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

# Server subcommand
server_app = typer.Typer(help="Server management commands", add_completion=False)
app.add_typer(server_app, name="server")

# ---------------------------------------------------------------------------
# Client config helpers  (~/.reelvault/client.json)
# One server address, API token and user id.
# ---------------------------------------------------------------------------

CLIENT_CONFIG_DIR = Path.home() / ".reelvault"
CLIENT_CONFIG_FILE = CLIENT_CONFIG_DIR / "client.json"


def _load_client_config() -> dict:
    """Load the client configuration from disk."""
    if CLIENT_CONFIG_FILE.exists():
        try:
            return json.loads(CLIENT_CONFIG_FILE.read_text(encoding="utf-8"))  # type: ignore[no-any-return]
        except (json.JSONDecodeError, OSError):
            return {}
    return {}


def _save_client_config(config: dict) -> None:
    """Save the client configuration to disk."""
    CLIENT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    CLIENT_CONFIG_FILE.write_text(
        json.dumps(config, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


def _normalise_server_url(address: str) -> str:
    """Normalise a user-provided address into a full URL.

    Accepts: ``host``, ``host:port``, ``http://host:port``, ``https://host:port``.
    When no scheme is given and no port is specified, the default port is used.
    """
    address = address.strip().rstrip("/")
    if address.startswith(("http://", "https://")):
        return address
    if ":" not in address:
        address = f"{address}:{DEFAULT_SERVER_PORT}"
    return f"http://{address}"


def _get_client(token: Optional[str] = None, user: Optional[str] = None):  # type: ignore[no-untyped-def]
    """Build an API client from saved config plus overrides, or exit."""
    from reelvault.client.api import ReelVaultClient

    cfg = _load_client_config()
    server = cfg.get("server")
    if not server:
        print_error("Server not configured. Run [bold]reelvault setup <address>[/bold] first.")
        raise typer.Exit(1)
    return ReelVaultClient(server, token=token or cfg.get("token"), user_id=user or cfg.get("user"))


def format_size(size: int) -> str:
    """Format size in human-readable format."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024  # type: ignore[assignment]
    return f"{size:.1f} PB"


def create_transfer_progress() -> Progress:
    return Progress(
        SpinnerColumn(spinner_name="dots"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, complete_style="green", finished_style="bright_green"),
        TaskProgressColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
        expand=True,
    )


def print_success(message: str) -> None:
    console.print(f"[bold green]OK[/bold green] {message}")


def print_error(message: str) -> None:
    console.print(f"[bold red]ERROR[/bold red] {message}")


def print_info(message: str) -> None:
    console.print(f"[bold blue]INFO[/bold blue] {message}")


def print_warning(message: str) -> None:
    console.print(f"[bold yellow]WARN[/bold yellow] {message}")


TOKEN_OPTION = typer.Option(None, "--token", "-t", help="API token (overrides saved config)", envvar="REELVAULT_TOKEN")
USER_OPTION = typer.Option(None, "--user", "-u", help="User id (overrides saved config)", envvar="REELVAULT_USER")


@app.command()
def setup(
    address: str = typer.Argument(..., help="Server address (host, host:port or URL)"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="API token to save"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id to save"),
) -> None:
    """Save the server address, token and user id."""
    from reelvault.client.api import ReelVaultClient

    server = _normalise_server_url(address)
    cfg = _load_client_config()
    cfg["server"] = server
    if token:
        cfg["token"] = token
    if user:
        cfg["user"] = user

    try:
        with ReelVaultClient(server, token=cfg.get("token")) as client:
            info = client.get_info()
        print_success(f"Connected to ReelVault {info.version} at [bold]{server}[/bold]")
    except Exception as e:
        print_warning(f"Server not reachable right now ({e}); saving anyway")

    _save_client_config(cfg)
    print_info(f"Config saved to {CLIENT_CONFIG_FILE}")


@app.command()
def upload(
    file_path: Path = typer.Argument(..., help="Video file to upload"),
    token: Optional[str] = TOKEN_OPTION,
    user: Optional[str] = USER_OPTION,
    part_size: int = typer.Option(DEFAULT_PART_SIZE, "--part-size", "-c", help="Part size in bytes"),
    threads: int = typer.Option(4, "--threads", "-j", help="Concurrent part uploads", min=1, max=32),
) -> None:
    """Upload a video into your library."""
    from reelvault.client.api import ReelVaultAPIError
    from reelvault.client.uploader import VideoUploader

    if not file_path.exists():
        print_error(f"File not found: {file_path}")
        raise typer.Exit(1)

    file_size = file_path.stat().st_size
    console.print(
        Panel(
            f"[bold]{file_path.name}[/bold]\n"
            f"[dim]Size: {format_size(file_size)} | Part: {format_size(part_size)} | Threads: {threads}[/dim]",
            title="[bold cyan]Upload[/bold cyan]",
            border_style="cyan",
        )
    )

    with _get_client(token, user) as client:
        with create_transfer_progress() as progress:
            task = progress.add_task(file_path.name, total=file_size)
            uploader = VideoUploader(
                client,
                file_path,
                part_size=part_size,
                max_concurrent=threads,
                progress_callback=lambda done, total: progress.update(task, completed=done),
            )
            try:
                result = uploader.upload()
            except ReelVaultAPIError as e:
                progress.stop()
                if e.duplicate:
                    print_warning(f"Already in your library as [bold]{e.payload.get('video_id', '?')}[/bold]")
                    raise typer.Exit(0)
                print_error(f"Upload rejected: {e.message}")
                raise typer.Exit(1)
            except Exception as e:
                progress.stop()
                print_error(f"Upload failed: {e}")
                raise typer.Exit(1)

    print_success(f"Uploaded as [bold]{result.video_id}[/bold]")


@app.command()
def quota(token: Optional[str] = TOKEN_OPTION, user: Optional[str] = USER_OPTION) -> None:
    """Show your storage quota and usage."""
    with _get_client(token, user) as client:
        try:
            info = client.get_quota()
        except Exception as e:
            print_error(f"Failed to read quota: {e}")
            raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_row("Quota", format_size(info.quota_bytes))
    table.add_row("Used", format_size(info.used_bytes))
    table.add_row("Reserved", format_size(info.reserved_bytes))
    table.add_row("Available", format_size(info.available_bytes))
    table.add_row("Videos", str(info.videos_count))
    table.add_row("Usage", f"{info.usage_percent:.1f}%")
    console.print(Panel(table, title="[bold cyan]Storage Quota[/bold cyan]", border_style="cyan"))


@app.command("list")
def list_videos(
    token: Optional[str] = TOKEN_OPTION,
    user: Optional[str] = USER_OPTION,
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    page_size: int = typer.Option(20, "--page-size", "-n", help="Videos per page"),
) -> None:
    """List videos in your library."""
    with _get_client(token, user) as client:
        try:
            data = client.list_videos(page=page, page_size=page_size)
        except Exception as e:
            print_error(f"Failed to list videos: {e}")
            raise typer.Exit(1)

    videos = data.get("videos", [])
    if not videos:
        print_info("No videos")
        return

    table = Table(title=f"Videos (page {page}, {data.get('total', len(videos))} total)")
    table.add_column("Video ID", style="cyan", overflow="fold")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    for v in videos:
        status = v.get("status", "")
        table.add_row(
            v.get("video_id", ""),
            v.get("original_name", ""),
            format_size(v.get("size", 0)),
            f"[yellow]{status}[/yellow]" if status == "DELETING" else status,
            str(v.get("created_at", ""))[:19],
        )
    console.print(table)


@app.command()
def delete(
    video_ids: list[str] = typer.Argument(..., help="Video id(s) to delete"),
    token: Optional[str] = TOKEN_OPTION,
    user: Optional[str] = USER_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """Delete videos. Storage is freed once the deletion worker has run."""
    if not force:
        if not typer.confirm(f"Delete {len(video_ids)} video(s)? This cannot be undone"):
            print_warning("Cancelled.")
            raise typer.Exit(0)

    with _get_client(token, user) as client:
        try:
            result = client.delete_videos(video_ids)
        except Exception as e:
            print_error(f"Failed to delete: {e}")
            raise typer.Exit(1)

    if result.accepted:
        print_success(f"{len(result.accepted)} video(s) scheduled for deletion")
    if result.already_deleting:
        print_info(f"Already being deleted: {', '.join(result.already_deleting)}")
    if result.missing:
        print_warning(f"Not found: {', '.join(result.missing)}")


@app.command()
def info(token: Optional[str] = TOKEN_OPTION) -> None:
    """Show server information."""
    with _get_client(token) as client:
        try:
            server_info = client.get_info()
        except Exception as e:
            print_error(f"Failed to reach server: {e}")
            raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_row("Server", client.server_url)
    table.add_row("Version", server_info.version)
    table.add_row("State backend", server_info.state_backend)
    table.add_row("Object store", server_info.object_store)
    table.add_row("Max upload", format_size(server_info.max_upload_bytes))
    table.add_row("Formats", ", ".join(server_info.allowed_extensions))
    console.print(Panel(table, title="[bold cyan]ReelVault Server[/bold cyan]", border_style="cyan"))


# ---------------------------------------------------------------------------
# Server commands
# ---------------------------------------------------------------------------


@server_app.command("start")
def server_start(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Bind host (default: from config or 0.0.0.0)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default: from config or 8780)"),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w", help="Number of workers (default: from config or 1)"
    ),
    storage: Optional[Path] = typer.Option(
        None, "--storage", help="Local object store directory (default: from config or ./storage)"
    ),
    backend: Optional[str] = typer.Option(
        None, "--backend", "-b", help="State backend: memory, file, redis (default: from config or file)"
    ),
    redis: Optional[str] = typer.Option(None, "--redis", help="Redis URL (if using redis backend)"),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file path (auto-discovered if not set)",
    ),
) -> None:
    """Start the ReelVault server.

    If --config is not provided, the config file is auto-discovered from:
      1. $REELVAULT_CONFIG env var
      2. ./config.yaml
      3. ./config/config.yaml
      4. ~/.reelvault/server.yaml

    All options default to the value in the config file. CLI flags override config.
    """
    try:
        from reelvault.server.config import discover_config_path
    except ImportError:
        print_error("Server dependencies not installed. Run: pip install 'reelvault'")
        raise typer.Exit(1)

    resolved_config = config
    if resolved_config is None:
        resolved_config = discover_config_path()

    console.print()
    info_lines = (
        f"[bold]Host:[/bold] {host or 'config/default'}:{port or 'config/default'}\n"
        f"[bold]Storage:[/bold] {storage or 'config/default'}\n"
        f"[bold]Backend:[/bold] {backend or 'config/default'}\n"
        f"[bold]Workers:[/bold] {workers or 'config/default'}\n"
    )
    if resolved_config:
        info_lines += f"[bold]Config:[/bold] {resolved_config.resolve()}"
    else:
        info_lines += "[bold]Config:[/bold] [dim]none (defaults + env vars)[/dim]"

    console.print(
        Panel(
            info_lines,
            title="[bold cyan]Starting Server[/bold cyan]",
            border_style="cyan",
        )
    )

    from reelvault.server.main import run_server

    try:
        run_server(
            host=host,
            port=port,
            workers=workers,
            config_path=config,
            storage_path=storage,
            state_backend=backend,
            redis_url=redis,
        )
    except Exception as e:
        print_error(f"Server error: {e}")
        raise typer.Exit(1)


@server_app.command("reconcile")
def server_reconcile(
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Only recompute this user's ledger"),
    token: Optional[str] = TOKEN_OPTION,
) -> None:
    """Run a reconciler pass on the server (admin token required)."""
    with _get_client(token) as client:
        try:
            with console.status("[bold cyan]Reconciling...", spinner="dots"):
                report = client.reconcile(user_id)
        except Exception as e:
            print_error(f"Reconcile failed: {e}")
            raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_row("Expired reservations", f"{report.expired_reservations} ({format_size(report.released_bytes)})")
    table.add_row("Objects scanned", str(report.scanned))
    table.add_row("Orphans deleted", str(report.deleted))
    table.add_row("Malformed keys", str(report.skipped))
    table.add_row("Ledger corrections", str(report.ledger_corrections))
    table.add_row("Re-queued deletions", str(report.requeued_deletions))
    if report.truncated:
        table.add_row("[yellow]Scan truncated[/yellow]", "raise reconcile_max_keys to scan everything")
    console.print(Panel(table, title="[bold cyan]Reconcile[/bold cyan]", border_style="cyan"))


@server_app.command("set-quota")
def server_set_quota(
    user_id: str = typer.Argument(..., help="User whose quota changes"),
    size: str = typer.Argument(..., help="New quota, e.g. 500GB"),
    token: Optional[str] = TOKEN_OPTION,
) -> None:
    """Change a user's storage quota (admin token required)."""
    from reelvault.server.config import parse_size

    try:
        quota_bytes = parse_size(size)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    with _get_client(token) as client:
        try:
            profile = client.set_quota(user_id, quota_bytes)
        except Exception as e:
            print_error(f"Failed to set quota: {e}")
            raise typer.Exit(1)
    print_success(f"Quota of [bold]{profile['user_id']}[/bold] is now {format_size(profile['quota_bytes'])}")


if __name__ == "__main__":
    app()
