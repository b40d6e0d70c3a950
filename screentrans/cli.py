"""
Command-line interface for screentrans.

Provides commands for:
- Translating text and text files through the provider chain
- Recognizing (and optionally translating) screenshots
- Inspecting providers, OCR engines and the translation cache
- Managing API keys

Usage:
    screentrans translate --text "Hello world" --target ja
    screentrans ocr capture.png --translate
    screentrans providers --privacy offline
    screentrans keys set deepl
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from screentrans import __version__
from screentrans.config import SETTINGS_FILE
from screentrans.context import EngineContext
from screentrans.pipeline import PipelineConfig, PipelineOrchestrator, PipelineResult
from screentrans.privacy import get_policy

app = typer.Typer(
    name="screentrans",
    help="screentrans: translation & recognition dispatch engine for screen translation",
    add_completion=False,
)
console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"screentrans v{__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Log debug output",
    ),
):
    """screentrans: translate text and screenshots with provider fallback."""
    setup_logging(verbose)


def _context(privacy: Optional[str] = None, settings: Path = SETTINGS_FILE) -> EngineContext:
    ctx = EngineContext.from_settings_file(settings).init()
    if privacy:
        try:
            ctx.set_privacy_mode(privacy)
        except ValueError as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
    return ctx


def _print_failure(result: PipelineResult) -> None:
    console.print(f"[red]Error:[/] {result.error}")
    if result.error_kind:
        console.print(f"[dim]{result.error_kind}[/]")


@app.command()
def translate(
    input_text: Optional[str] = typer.Option(
        None, "--text", "-t",
        help="Text to translate",
    ),
    input_file: Optional[Path] = typer.Option(
        None, "--input", "-i",
        help="Text file to translate as one request",
    ),
    source_lang: Optional[str] = typer.Option(
        None, "--source", "-s",
        help="Source language code (default: auto)",
    ),
    target_lang: Optional[str] = typer.Option(
        None, "--target", "-l",
        help="Target language code (default: from settings)",
    ),
    template: Optional[str] = typer.Option(
        None, "--template",
        help="Prompt template: natural, precise, formal, ocr, creative",
    ),
    provider: Optional[list[str]] = typer.Option(
        None, "--provider", "-p",
        help="Provider to use; repeat for an ordered fallback list",
    ),
    privacy: Optional[str] = typer.Option(
        None, "--privacy",
        help="Privacy mode: standard, secure, offline",
    ),
    mode: str = typer.Option(
        "normal", "--mode",
        help="Provider order: normal or subtitle",
    ),
    lock_target: bool = typer.Option(
        False, "--lock-target",
        help="Never flip the target when the text is already in it",
    ),
    no_cache: bool = typer.Option(
        False, "--no-cache",
        help="Bypass the translation cache",
    ),
    no_fallback: bool = typer.Option(
        False, "--no-fallback",
        help="Stop at the first provider failure",
    ),
    stream: bool = typer.Option(
        False, "--stream",
        help="Print the translation as it arrives",
    ),
):
    """Translate text."""
    if not input_text and not input_file:
        console.print("[red]Error:[/] Provide either --text or --input", style="bold")
        raise typer.Exit(1)
    text = input_text if input_text else input_file.read_text(encoding="utf-8")

    ctx = _context(privacy)
    config = PipelineConfig.from_settings(ctx.settings)
    config.mode = mode
    config.use_cache = not no_cache
    config.enable_fallback = not no_fallback
    config.lock_target_lang = lock_target or config.lock_target_lang
    config.priority = list(provider) if provider else None
    if source_lang:
        config.source_lang = source_lang
    if target_lang:
        config.target_lang = target_lang
    if template:
        config.template = template
    pipeline = PipelineOrchestrator(ctx, config)

    if stream:
        def on_chunk(chunk: str) -> None:
            console.print(chunk, end="", markup=False, highlight=False)

        result = asyncio.run(pipeline.run_from_text(text, on_chunk=on_chunk))
        console.print()
    else:
        with Progress(SpinnerColumn(), TextColumn("{task.description}"), console=console, transient=True) as progress:
            progress.add_task("Translating...", total=None)
            result = asyncio.run(pipeline.run_from_text(text))

    if not result.success:
        _print_failure(result)
        raise typer.Exit(1)

    if not stream:
        console.print(result.translated, markup=False, highlight=False)
    source = "cache" if result.from_cache else (result.provider_id or "not translated")
    console.print(f"\n[dim]{result.source_lang or '?'} -> {result.target_lang or '?'} via {source}[/]")


@app.command()
def batch(
    input_file: Path = typer.Argument(..., help="Text file, one segment per line"),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o",
        help="Write translations here, one per line",
    ),
    target_lang: Optional[str] = typer.Option(None, "--target", "-l", help="Target language code"),
    template: Optional[str] = typer.Option(None, "--template", help="Prompt template"),
    privacy: Optional[str] = typer.Option(None, "--privacy", help="Privacy mode"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the translation cache"),
):
    """Translate a file line by line, joining lines into one request where possible."""
    if not input_file.exists():
        console.print(f"[red]Error:[/] File not found: {input_file}")
        raise typer.Exit(1)
    lines = input_file.read_text(encoding="utf-8").splitlines()

    ctx = _context(privacy)
    t = ctx.settings.translation
    results = asyncio.run(ctx.dispatcher.translate_batch(
        lines,
        source_lang=t.source_lang,
        target_lang=target_lang or t.target_lang,
        template=template or t.template,
        use_cache=not no_cache,
    ))

    failed = [i for i, r in enumerate(results) if not r.success]
    if output_file:
        output_file.write_text(
            "\n".join(r.text if r.success else "" for r in results) + "\n", encoding="utf-8"
        )
        console.print(f"[green]Saved {len(results)} line(s) to:[/] {output_file}")
    else:
        table = Table(title=f"Batch translation ({len(results)} lines)")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Source", style="cyan")
        table.add_column("Translation", style="green")
        table.add_column("Via", style="yellow")
        for i, (line, r) in enumerate(zip(lines, results), 1):
            via = "cache" if r.from_cache else (r.provider_id or "-")
            table.add_row(str(i), line, r.text if r.success else f"[red]{r.error}[/]", via)
        console.print(table)

    if failed:
        console.print(f"[yellow]⚠[/] {len(failed)} line(s) failed")
        raise typer.Exit(1)


@app.command()
def ocr(
    image: Path = typer.Argument(..., help="Image file (PNG or JPEG)"),
    engine: Optional[str] = typer.Option(None, "--engine", "-e", help="OCR engine to try first"),
    language: Optional[str] = typer.Option(None, "--language", help="OCR language, e.g. zh-Hans, en, ja"),
    do_translate: bool = typer.Option(False, "--translate", help="Translate the recognized text"),
    target_lang: Optional[str] = typer.Option(None, "--target", "-l", help="Target language code"),
    privacy: Optional[str] = typer.Option(None, "--privacy", help="Privacy mode"),
    no_fallback: bool = typer.Option(False, "--no-fallback", help="Do not try other engines"),
):
    """Recognize text in an image, optionally translating it."""
    if not image.exists():
        console.print(f"[red]Error:[/] File not found: {image}")
        raise typer.Exit(1)
    data = image.read_bytes()
    ctx = _context(privacy)

    if do_translate:
        config = PipelineConfig.from_settings(ctx.settings)
        config.ocr_engine = engine
        config.ocr_language = language
        if target_lang:
            config.target_lang = target_lang
        result = asyncio.run(PipelineOrchestrator(ctx, config).run_from_image(data))
        if not result.success:
            _print_failure(result)
            raise typer.Exit(1)
        console.print("[bold]Recognized:[/]")
        console.print(result.text or "[dim](no text)[/]", markup=not result.text, highlight=False)
        if result.translated:
            console.print("\n[bold]Translation:[/]")
            console.print(result.translated, markup=False, highlight=False)
        console.print(f"\n[dim]engine: {result.engine}, provider: {result.provider_id or '-'}[/]")
        return

    result = asyncio.run(ctx.ocr.recognize(data, engine=engine, language=language, fallback=not no_fallback))
    if not result.success:
        console.print(f"[red]Error:[/] {result.error}")
        raise typer.Exit(1)
    console.print(result.text or "[dim](no text)[/]", markup=not result.text, highlight=False)
    note = f", fallback from tier {result.tier}" if result.fallback else ""
    console.print(
        f"\n[dim]{result.engine_used} ({result.language}), "
        f"confidence {result.confidence:.2f}, {result.duration_ms} ms{note}[/]"
    )


@app.command()
def providers(
    privacy: Optional[str] = typer.Option(None, "--privacy", help="Show eligibility for this privacy mode"),
):
    """Show translation providers and whether they can be used."""
    ctx = _context(privacy)
    table = Table(title=f"Translation Providers ({ctx.privacy_mode.value} mode)")
    table.add_column("Provider", style="cyan")
    table.add_column("Name")
    table.add_column("Online")
    table.add_column("Configured")
    table.add_column("Allowed")
    table.add_column("Streaming", style="dim")

    def mark(value: bool) -> str:
        return "[green]✓[/]" if value else "[red]✗[/]"

    for status in ctx.dispatcher.provider_status():
        name = status["name"] if status["enabled"] else f"{status['name']} [dim](disabled)[/]"
        table.add_row(
            status["id"],
            name,
            "yes" if status["online"] else "no",
            mark(status["configured"]),
            mark(status["allowed"]),
            "yes" if status["streaming"] else "no",
        )
    console.print(table)
    order = ctx.scheduler.resolve_priority("normal", ctx.dispatcher.user_priority, ctx.privacy_mode)
    console.print(f"\n[dim]Order: {' > '.join(order) or 'none eligible'}[/]")
    console.print(f"[dim]{ctx.privacy_mode.value}: {get_policy(ctx.privacy_mode).description}[/]")


@app.command()
def engines(
    privacy: Optional[str] = typer.Option(None, "--privacy", help="Show eligibility for this privacy mode"),
):
    """Show OCR engines by tier."""
    ctx = _context(privacy)
    table = Table(title=f"OCR Engines ({ctx.privacy_mode.value} mode)")
    table.add_column("Tier", justify="right")
    table.add_column("Engine", style="cyan")
    table.add_column("Name")
    table.add_column("Available")
    table.add_column("Configured")
    table.add_column("Allowed")

    for engine_id, status in ctx.ocr.engine_status().items():
        current = " [yellow](default)[/]" if status["current"] else ""
        table.add_row(
            str(status["tier"]),
            engine_id + current,
            status["name"],
            "[green]✓[/]" if status["available"] else "[red]✗[/]",
            "[green]✓[/]" if status["configured"] else "[red]✗[/]",
            "[green]✓[/]" if status["allowed_by_privacy"] else "[red]✗[/]",
        )
    console.print(table)
    console.print(f"\n[dim]{ctx.privacy_mode.value}: {get_policy(ctx.privacy_mode).description}[/]")


@app.command("test-provider")
def test_provider(
    provider_id: str = typer.Argument(..., help="Provider ID, e.g. local-llm, openai, deepl"),
):
    """Check a provider's configuration and connection."""
    ctx = _context()
    status = asyncio.run(ctx.dispatcher.test_provider(provider_id))
    if status.success:
        console.print(f"[green]✓[/] {provider_id}: {status.message}")
        for model in status.models[:20]:
            console.print(f"    {model}")
    else:
        console.print(f"[red]✗[/] {provider_id}: {status.message}")
        raise typer.Exit(1)


@app.command()
def cache(
    action: str = typer.Argument(..., help="Action: stats, cleanup, clear"),
):
    """Inspect or clear the translation cache."""
    ctx = _context()
    tier = ctx.cache

    if action == "stats":
        stats = tier.l2.stats()
        table = Table(title="Translation Cache (L2)")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        for key, value in stats.items():
            table.add_row(key.replace("_", " ").title(), str(value))
        console.print(table)

    elif action == "cleanup":
        removed = tier.l2.cleanup()
        console.print(f"[green]✓[/] Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")

    elif action == "clear":
        if not typer.confirm("Delete all cached translations?"):
            raise typer.Exit(0)
        tier.clear()
        console.print("[green]✓[/] Cache cleared")

    else:
        console.print(f"[red]Error:[/] Unknown action '{action}'")
        console.print("Available actions: stats, cleanup, clear")
        raise typer.Exit(1)


@app.command()
def keys(
    action: str = typer.Argument(..., help="Action: list, set, status, delete"),
    service: Optional[str] = typer.Argument(None, help="Service name (openai, deepl, ocrspace, etc.)"),
):
    """Manage API keys.

    Examples:
        screentrans keys list              # List all keys
        screentrans keys set deepl         # Set the DeepL key
        screentrans keys status openai     # Check where the OpenAI key comes from
        screentrans keys delete deepl      # Delete the DeepL key
    """
    from screentrans.keys import KeyManager, SERVICES

    km = KeyManager()

    if action == "list":
        table = Table(title="API Keys Status")
        table.add_column("Service", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Source", style="yellow")
        table.add_column("Value", style="dim")

        for key_info in km.list_keys():
            status = "✓ Set" if key_info.is_set else "✗ Not set"
            status_color = "green" if key_info.is_set else "red"
            table.add_row(
                key_info.service,
                f"[{status_color}]{status}[/]",
                key_info.source,
                key_info.masked_value if key_info.is_set else "-",
            )

        console.print(table)
        console.print("\n[dim]Priority: env > keychain > config file[/]")
        return

    if not service:
        console.print("[red]Error:[/] Service name required")
        console.print(f"Available services: {', '.join(SERVICES)}")
        raise typer.Exit(1)

    if action == "set":
        key = typer.prompt(f"Enter API key for {service}", hide_input=True)
        if not key:
            console.print("[red]Error:[/] Key cannot be empty")
            raise typer.Exit(1)

        storage = km.set_key(service, key)
        console.print(f"[green]✓[/] API key for {service} saved to {storage}")
        if storage == "config":
            console.print(f"[yellow]Note:[/] Key stored in local file ({km.config_file})")

    elif action == "status":
        key_info = km.get_key_info(service)
        if key_info.is_set:
            console.print(f"[green]✓[/] API key for {service} is set")
            console.print(f"    Source: {key_info.source}")
            console.print(f"    Value: {key_info.masked_value}")
        else:
            console.print(f"[red]✗[/] No API key found for {service}")
            console.print(f"Set with: [cyan]screentrans keys set {service}[/]")

    elif action == "delete":
        if km.delete_key(service):
            console.print(f"[green]✓[/] API key for {service} deleted")
        else:
            console.print(f"[yellow]⚠[/] No key found to delete for {service}")

    else:
        console.print(f"[red]Error:[/] Unknown action '{action}'")
        console.print("Available actions: list, set, status, delete")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
