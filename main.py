#!/usr/bin/env python3
"""
Purchase Order Extractor: CLI entry point.

Usage examples:
  python main.py check                              # Verify setup (LLM, poppler, Fortnox)
  python main.py serve                              # Run the HTTP backend on :3000
  python main.py process order.pdf                  # Extract one purchase order
  python main.py process orders/*.pdf --export      # Extract, then export all to Fortnox
  python main.py process order.pdf --server http://localhost:3000
  python main.py process order.pdf --remote         # Same, using API_BASE_URL

  python main.py settings set --client-id ID --client-secret SECRET
  python main.py authorize                          # Print the Fortnox consent URL
  python main.py callback "http://localhost:3000/oauth-callback?code=...&state=..."
  python main.py settings show
"""
import asyncio
import json
import logging
import shutil
import sys
import urllib.parse
from pathlib import Path
from typing import Optional

import click

from config import Config
from models.credentials import ApiKeys
from models.queue import STATUS_COMPLETED, STATUS_ERROR, PdfFile, QueueItem
from pipeline.api_client import ApiClient
from pipeline.backends import LocalBackend
from pipeline.credentials import CredentialStore
from pipeline.errors import PipelineError
from pipeline.extraction import ExtractionClient
from pipeline.fortnox import FortnoxGateway, describe_oauth_error
from pipeline.queue import ProcessingQueue
from pipeline.rasterizer import PdfRasterizer


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _mask(value: str) -> str:
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * 8 + value[-4:]


def _store(config: Config) -> CredentialStore:
    return CredentialStore(config.credentials_path, default_redirect_uri=config.fortnox_redirect_uri)


def _extraction_client(config: Config) -> ExtractionClient:
    return ExtractionClient(
        model=config.llm_model,
        base_url=config.llm_base_url,
        api_key=config.llm_api_key or None,
        max_tokens=config.llm_max_tokens,
        rasterizer=PdfRasterizer(dpi=config.raster_dpi),
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Purchase Order Extractor: PDF purchase orders into Fortnox."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
@click.option("--model", default=None, help="LLM model name to check")
def check(model: str | None) -> None:
    """Verify the LLM endpoint, poppler and Fortnox credentials."""
    config = Config()
    if model:
        config.llm_model = model

    click.echo("\n=== Purchase Order Extractor Setup Check ===\n")

    # LLM backend
    llm = _extraction_client(config).check_connection()
    click.echo(f"  LLM endpoint:  {config.llm_base_url}")
    if llm["ok"]:
        model_status = "✓ available" if llm.get("model_available") else "✗ NOT found"
        click.echo(f"  Model '{config.llm_model}':  {model_status}")
        if not llm.get("model_available"):
            available = llm.get("available_models", [])
            if available:
                click.echo(f"  Available models: {', '.join(available[:10])}")
            click.echo(f"  → Check LLM_MODEL matches a model at {config.llm_base_url}")
    else:
        click.echo(f"  LLM backend:   ✗ NOT reachable ({llm.get('error')})")
        click.echo("  → Check LLM_BASE_URL and OPENAI_API_KEY in your .env")

    click.echo()

    # Rasterizer
    pdftoppm = shutil.which("pdftoppm")
    tick = "✓" if pdftoppm else "✗"
    click.echo(f"  poppler (pdftoppm):           {tick}  {pdftoppm or 'not found, install poppler-utils'}")

    # Credentials
    keys = _store(config).load()
    click.echo(f"  Credentials file:             {config.credentials_path}")
    click.echo(f"  Client ID:                    {_mask(keys.fortnox_client_id)}")
    click.echo(f"  Access token:                 {'✓ stored' if keys.fortnox_access_token else '✗ not stored'}")

    try:
        result = FortnoxGateway(config).test_connection(
            keys.fortnox_access_token or None, keys.fortnox_client_secret or None,
        )
        click.echo(f"  Fortnox connection:           ✓ {result.get('companyName') or 'connected'}")
    except PipelineError as e:
        click.echo(f"  Fortnox connection:           ✗ {e}")
    click.echo()


# --------------------------------------------------------------------
# serve command
# --------------------------------------------------------------------

@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", default=None, type=int, help="Port (default: PORT or 3000)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str, port: Optional[int], reload: bool) -> None:
    """Run the HTTP backend."""
    import uvicorn

    config = Config()
    uvicorn.run("server.app:app", host=host, port=port or config.port, reload=reload)


# --------------------------------------------------------------------
# process command
# --------------------------------------------------------------------

def _print_item(item: QueueItem) -> None:
    if item.status == STATUS_ERROR:
        click.echo(f"  ✗ {item.file_name}: {item.error}")
        return
    line = f"  ✓ {item.file_name} [{item.status}]"
    if item.extracted_data is not None:
        line += f"  {item.summary()}  (confidence {item.extracted_data.confidence:.0%})"
        if item.low_confidence:
            line += "  ⚠ low confidence, review before export"
    click.echo(line)


async def _run_queue(queue: ProcessingQueue, files: list[PdfFile], export: bool, credentials: ApiKeys):
    try:
        queue.enqueue(files)
        await queue.wait_until_idle()
        summary = await queue.export_all(credentials) if export else None
    finally:
        await queue.close()
    return summary


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--export", "do_export", is_flag=True, help="Export every extracted order to Fortnox")
@click.option("--server", default=None, help="Use a running backend at this URL instead of in-process")
@click.option("--remote", is_flag=True, help="Use the running backend at API_BASE_URL instead of in-process")
@click.option("--model", "-m", default=None, help="LLM model (default: gpt-4o)")
@click.option("--json", "as_json", is_flag=True, help="Print extracted data as JSON")
def process(
    files: tuple[str, ...],
    do_export: bool,
    server: Optional[str],
    remote: bool,
    model: Optional[str],
    as_json: bool,
) -> None:
    """Extract purchase orders from one or more PDFs."""
    config = Config()
    if model:
        config.llm_model = model

    if remote and not server:
        server = config.api_base_url
    if server:
        backend = ApiClient(server, timeout=max(config.http_timeout_seconds, 120.0))
    else:
        backend = LocalBackend(_extraction_client(config), FortnoxGateway(config), config.upload_dir)

    pdfs = [PdfFile(name=Path(f).name, content=Path(f).read_bytes()) for f in files]
    credentials = _store(config).load()
    queue = ProcessingQueue(backend, timeout=config.extraction_timeout_seconds)

    summary = asyncio.run(_run_queue(queue, pdfs, do_export, credentials))

    click.echo(f"\nProcessed {len(pdfs)} file(s):")
    for item in queue.items():
        _print_item(item)
        if as_json and item.extracted_data is not None:
            click.echo(json.dumps(item.extracted_data.model_dump(mode="json", by_alias=True), indent=2))

    if summary is not None:
        if summary.nothing_to_export:
            click.echo("\nNothing to export.")
        else:
            click.echo(f"\nExported {summary.exported} of {summary.attempted} purchase order(s).")
            for err in summary.errors:
                click.echo(f"  ✗ {err}")

    counts = queue.counts()
    if counts[STATUS_ERROR]:
        sys.exit(1)
    if not do_export and counts[STATUS_COMPLETED]:
        click.echo("\nRun again with --export to send the orders to Fortnox.")


# --------------------------------------------------------------------
# OAuth commands
# --------------------------------------------------------------------

@cli.command()
@click.option("--state", default=None, help="OAuth state value (random if omitted)")
def authorize(state: Optional[str]) -> None:
    """Print the Fortnox authorization URL for the stored client ID."""
    config = Config()
    keys = _store(config).load()
    if not keys.fortnox_client_id:
        click.echo("No client ID stored. Run: python main.py settings set --client-id ...", err=True)
        sys.exit(1)
    url = FortnoxGateway(config).authorization_url(
        keys.fortnox_client_id,
        keys.fortnox_redirect_uri or config.fortnox_redirect_uri,
        state=state,
    )
    click.echo("\nOpen this URL in a browser and approve access:\n")
    click.echo(f"  {url}\n")
    click.echo("Then run: python main.py callback <redirect URL or code>")


@cli.command()
@click.argument("code_or_url")
def callback(code_or_url: str) -> None:
    """Exchange an authorization code (or the full redirect URL) for a token."""
    code = code_or_url
    if "://" in code_or_url or code_or_url.startswith("?"):
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(code_or_url).query or code_or_url.lstrip("?"))
        if "error" in query:
            error = query["error"][0]
            description = query.get("error_description", [None])[0]
            click.echo(f"✗ Authorization failed: {describe_oauth_error(error, description)}", err=True)
            sys.exit(1)
        if "code" not in query:
            click.echo("✗ No authorization code found in the URL", err=True)
            sys.exit(1)
        code = query["code"][0]

    config = Config()
    store = _store(config)
    keys = store.load()
    try:
        token = FortnoxGateway(config).exchange_code(
            code,
            keys.fortnox_client_id,
            keys.fortnox_client_secret,
            keys.fortnox_redirect_uri or config.fortnox_redirect_uri,
        )
    except PipelineError as e:
        click.echo(f"✗ Token exchange failed: {e}", err=True)
        sys.exit(1)

    keys.fortnox_access_token = token.access_token
    store.save(keys)
    click.echo(f"✓ Access token saved to {config.credentials_path}")
    if token.scope:
        click.echo(f"  Scopes: {token.scope}")
    if token.expires_in:
        click.echo(f"  Expires in: {token.expires_in} seconds")


# --------------------------------------------------------------------
# settings commands
# --------------------------------------------------------------------

@cli.group()
def settings() -> None:
    """Show or change the stored Fortnox settings."""


@settings.command("show")
def settings_show() -> None:
    config = Config()
    keys = _store(config).load()
    click.echo(f"\nCredentials file: {config.credentials_path}\n")
    click.echo(f"  Client ID:      {_mask(keys.fortnox_client_id)}")
    click.echo(f"  Client secret:  {_mask(keys.fortnox_client_secret)}")
    click.echo(f"  Access token:   {_mask(keys.fortnox_access_token)}")
    click.echo(f"  Redirect URI:   {keys.fortnox_redirect_uri}")
    click.echo()


@settings.command("set")
@click.option("--client-id", default=None)
@click.option("--client-secret", default=None)
@click.option("--access-token", default=None)
@click.option("--redirect-uri", default=None)
def settings_set(
    client_id: Optional[str],
    client_secret: Optional[str],
    access_token: Optional[str],
    redirect_uri: Optional[str],
) -> None:
    """Update one or more stored values."""
    updates = {
        "fortnox_client_id":     client_id,
        "fortnox_client_secret": client_secret,
        "fortnox_access_token":  access_token,
        "fortnox_redirect_uri":  redirect_uri,
    }
    updates = {k: v for k, v in updates.items() if v is not None}
    if not updates:
        click.echo("Nothing to update. See: python main.py settings set --help", err=True)
        sys.exit(1)

    config = Config()
    store = _store(config)
    store.save(store.load().model_copy(update=updates))
    click.echo(f"✓ Updated {', '.join(sorted(updates))}")


@settings.command("clear")
@click.confirmation_option(prompt="Delete all stored Fortnox settings?")
def settings_clear() -> None:
    _store(Config()).clear()
    click.echo("✓ Settings cleared")


if __name__ == "__main__":
    cli()
