"""CLI entry point for mediasync.

Provides commands:
  - upload: Upload the media listed in a CSV manifest to the catalog
  - resolve: Find a reachable public URL for an uploaded file
  - find: Look up files by a provenance value
  - config: Manage the stored Admin API token
"""

from __future__ import annotations

import asyncio
import csv
import logging
import signal
from pathlib import Path
from typing import Annotated, Optional

import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mediasync.config import KEY_NAME, SERVICE_NAME, load_upload_config
from mediasync.models import Provenance, UploadConfig, UploadRequest

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="mediasync - Upload media into a Shopify catalog with provenance tracking",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (access token)")
app.add_typer(config_app, name="config")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to upload_config.json"),
]
DebugOption = Annotated[
    bool, typer.Option("--debug", help="Write debug log to ~/.mediasync/debug.log")
]


def _enable_debug_log() -> None:
    debug_dir = Path.home() / ".mediasync"
    debug_dir.mkdir(exist_ok=True)
    fh = logging.FileHandler(debug_dir / "debug.log")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root = logging.getLogger("mediasync")
    root.setLevel(logging.DEBUG)
    root.addHandler(fh)


def _load_config(config_path: Path | None) -> UploadConfig:
    config = load_upload_config(config_path)
    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    return config


def read_manifest(manifest: Path, batch_id: str | None = None) -> list[UploadRequest]:
    """Parse a CSV manifest into upload requests.

    Columns: ``source`` (URL or local path), ``content_type``, ``alt``,
    ``product_id``, ``upc``.  Only ``source`` is required.

    Raises:
        ValueError: A row has no source or a non-numeric product id.
    """
    requests: list[UploadRequest] = []
    with open(manifest, newline="") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            source = (row.get("source") or "").strip()
            if not source:
                raise ValueError(f"{manifest}:{line_no}: missing source")
            product_id = (row.get("product_id") or "").strip()
            if product_id and not product_id.isdigit():
                raise ValueError(f"{manifest}:{line_no}: product_id must be numeric")

            requests.append(
                UploadRequest(
                    source=source if source.startswith(("http://", "https://")) else Path(source),
                    content_type=(row.get("content_type") or "").strip() or "image/jpeg",
                    descriptive_text=(row.get("alt") or "").strip(),
                    provenance=Provenance(
                        product_id=int(product_id) if product_id else None,
                        external_code=(row.get("upc") or "").strip() or None,
                        batch_id=batch_id,
                    ),
                )
            )
    return requests


# ---------------------------------------------------------------------------
# upload
# ---------------------------------------------------------------------------


@app.command()
def upload(
    manifest: Annotated[
        Path,
        typer.Argument(help="CSV manifest (source,content_type,alt,product_id,upc)"),
    ],
    batch_id: Annotated[
        Optional[str],
        typer.Option("--batch-id", "-b", help="Batch id recorded as provenance"),
    ] = None,
    chunk_size: Annotated[
        Optional[int],
        typer.Option("--chunk-size", "-n", help="Requests per chunk (default from config)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be uploaded without uploading"),
    ] = False,
    config_path: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """Upload every asset listed in MANIFEST and attach its provenance."""
    if debug:
        _enable_debug_log()

    if not manifest.exists():
        console.print(f"[red]Error:[/red] Manifest not found: {manifest}")
        raise typer.Exit(code=1)

    try:
        requests = read_manifest(manifest, batch_id)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if not requests:
        console.print("[green]Manifest is empty, nothing to upload.[/green]")
        return

    if dry_run:
        preview = Table(title=f"Dry run: {len(requests)} items")
        preview.add_column("Source", style="cyan", max_width=60)
        preview.add_column("Kind")
        preview.add_column("Alt", max_width=30)
        preview.add_column("Product", justify="right")
        preview.add_column("UPC")
        for req in requests[:20]:
            preview.add_row(
                str(req.source),
                req.source_kind.value,
                req.descriptive_text,
                str(req.provenance.product_id or ""),
                req.provenance.external_code or "",
            )
        if len(requests) > 20:
            preview.add_row(f"... and {len(requests) - 20} more", "", "", "", "")
        console.print(preview)
        return

    config = _load_config(config_path)
    if chunk_size is not None:
        config.chunk_size = chunk_size

    from mediasync.upload.errors import BatchAbortedError
    from mediasync.upload.progress import UploadProgressTracker

    total_chunks = (len(requests) + config.chunk_size - 1) // config.chunk_size
    console.print(
        Panel(
            f"Uploading [bold]{len(requests)}[/bold] items to "
            f"[bold]{config.shop_domain}[/bold]\n"
            f"Chunks: {total_chunks} x {config.chunk_size} | "
            f"Rate: {config.requests_per_second}/s",
            title="Upload Pipeline",
        )
    )
    progress = UploadProgressTracker(total_items=len(requests), total_chunks=total_chunks)

    async def _run_upload():
        from mediasync.upload import build_pipeline
        from mediasync.upload.executor import build_http_client

        async with build_http_client(config) as http:
            pipeline = build_pipeline(config, http)
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, pipeline.coordinator.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug("Could not set signal handler")
            with progress:
                return await pipeline.coordinator.submit(requests, progress=progress)

    aborted = False
    try:
        result = asyncio.run(_run_upload())
    except BatchAbortedError as e:
        console.print(f"[red]Batch aborted:[/red] {e}")
        result = e.result
        aborted = True

    summary_table = Table(title="Upload Summary")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Count", justify="right")
    summary_table.add_row("Submitted", str(result.submitted))
    summary_table.add_row("Succeeded", f"[green]{len(result.succeeded)}[/green]")
    summary_table.add_row("Unverified", f"[yellow]{len(result.unverified)}[/yellow]")
    summary_table.add_row("Failed", f"[red]{len(result.failed)}[/red]")
    console.print(Panel(summary_table, title="Upload Complete"))

    if result.failed:
        failures = Table(title="Failures")
        failures.add_column("Source", style="cyan", max_width=50)
        failures.add_column("Kind")
        failures.add_column("Message", max_width=60)
        for req, failure in result.failed[:50]:
            failures.add_row(str(req.source), failure.kind.value, failure.message)
        console.print(failures)

    if aborted or result.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# resolve / find
# ---------------------------------------------------------------------------


@app.command()
def resolve(
    file_id: Annotated[str, typer.Argument(help="Catalog file id (gid://shopify/...)")],
    product_id: Annotated[
        Optional[int],
        typer.Option("--product-id", help="Product for the REST fallback"),
    ] = None,
    source_url: Annotated[
        Optional[str],
        typer.Option("--source-url", help="Original source for the REST fallback"),
    ] = None,
    variants: Annotated[
        bool,
        typer.Option("--variants", help="Also print resized and WebP variants of the URL"),
    ] = False,
    config_path: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """Find a publicly reachable URL for FILE_ID."""
    if debug:
        _enable_debug_log()
    config = _load_config(config_path)

    from mediasync.upload.cdn import RestFallback, responsive_urls
    from mediasync.upload.errors import MediaSyncError

    fallback = None
    if product_id is not None and source_url:
        fallback = RestFallback(product_id=product_id, source_url=source_url)

    async def _run_resolve():
        from mediasync.upload import build_pipeline
        from mediasync.upload.executor import build_http_client

        async with build_http_client(config) as http:
            pipeline = build_pipeline(config, http)
            record = await pipeline.executor.query_file(file_id)
            return await pipeline.resolver.resolve(record, fallback=fallback)

    try:
        resolved = asyncio.run(_run_resolve())
    except MediaSyncError as e:
        console.print(f"[red]Could not resolve {file_id}:[/red] {e}")
        raise typer.Exit(code=1)

    style = "green" if resolved.verified else "yellow"
    console.print(f"[{style}]{resolved.url}[/{style}]")
    console.print(
        f"[dim]strategy={resolved.strategy} verified={resolved.verified}[/dim]"
    )

    if variants:
        table = Table(title="Variants")
        table.add_column("Preset", style="cyan")
        table.add_column("URL", overflow="fold")
        for name, url in responsive_urls(resolved).items():
            table.add_row(name, url)
        console.print(table)


@app.command()
def find(
    key: Annotated[str, typer.Argument(help="Provenance key (product_id, upc, batch_id)")],
    value: Annotated[str, typer.Argument(help="Value to match")],
    namespace: Annotated[
        Optional[str],
        typer.Option("--namespace", help="Metafield namespace (default from config)"),
    ] = None,
    config_path: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """List files whose current provenance KEY equals VALUE."""
    if debug:
        _enable_debug_log()
    config = _load_config(config_path)

    from mediasync.upload.errors import MediaSyncError

    async def _run_find() -> list[str]:
        from mediasync.upload import build_pipeline
        from mediasync.upload.executor import build_http_client

        async with build_http_client(config) as http:
            pipeline = build_pipeline(config, http)
            return await pipeline.tracker.find_by_provenance(key, value, namespace)

    try:
        ids = asyncio.run(_run_find())
    except MediaSyncError as e:
        console.print(f"[red]Search failed:[/red] {e}")
        raise typer.Exit(code=1)

    if not ids:
        console.print(f"[yellow]No files with {key} = {value}[/yellow]")
        return
    for file_id in ids:
        console.print(file_id)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="Admin API access token to store in system keyring"),
    ],
) -> None:
    """Store the access token in the system keyring (service: mediasync-shopify)."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Access token cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, token)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store access token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Access token stored in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("get-token")
def show_token() -> None:
    """Display the stored access token (masked)."""
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if not token:
        console.print(
            "[yellow]No access token found in keyring.[/yellow]\n"
            "Set it with: [bold]mediasync config set-token YOUR_TOKEN[/bold]"
        )
        raise typer.Exit(code=1)

    if len(token) > 8:
        masked = token[:8] + "*" * (len(token) - 8)
    else:
        masked = token[:2] + "*" * max(1, len(token) - 2)

    console.print(f"[green]Access token:[/green] {masked}")
    console.print(f"[dim](stored in service: {SERVICE_NAME})[/dim]")


@config_app.command("remove-token")
def remove_token() -> None:
    """Delete the stored access token from the system keyring."""
    if not keyring.get_password(SERVICE_NAME, KEY_NAME):
        console.print(
            "[yellow]Warning:[/yellow] No access token found in keyring.\n"
            "Nothing to remove."
        )
        return

    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to remove access token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Access token removed from system keyring (service: {SERVICE_NAME})"
    )
