"""evidoc command-line interface."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import DEFAULT_CONFIG_PATH, EvidocConfig, load_config, save_config
from .errors import EvidocError
from .logging_setup import configure_logging
from .models import ProcessingStatus
from .service import ServiceComponents, build_service

app = typer.Typer(
    name="evidoc",
    help="Evidence document processing: extraction, OCR, classification, entities and summaries.",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    ProcessingStatus.COMPLETED.value: "green",
    ProcessingStatus.FAILED.value: "red",
    ProcessingStatus.PENDING.value: "dim",
    ProcessingStatus.QUEUED.value: "yellow",
}


class _State:
    config_path: Optional[Path] = None


state = _State()


@app.callback()
def main_callback(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file (default ~/.evidoc/config.json)"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
):
    state.config_path = config_path
    config = _load()
    configure_logging(log_level or config.log_level)


def _load() -> EvidocConfig:
    try:
        return load_config(state.config_path)
    except EvidocError as e:
        rprint(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)


def _components() -> ServiceComponents:
    return build_service(_load())


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "cyan")
    return f"[{style}]{status}[/{style}]"


def _fail(e: Exception) -> None:
    rprint(f"[red]✗ {e}[/red]")
    raise typer.Exit(1)


# === Setup ===


@app.command("init-db")
def init_db_command():
    """Create the database tables."""
    config = _load()
    build_service(config, create_tables=True)
    rprint(f"[green]✓ Database ready at {config.resolved_database_url}[/green]")


@app.command()
def config(
    show: bool = typer.Option(False, "--show", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", help="Write the effective configuration to the config file"),
):
    """Manage evidoc configuration."""
    path = state.config_path or DEFAULT_CONFIG_PATH
    current = _load()

    if init:
        rprint("[bold]evidoc Configuration Setup[/bold]\n")
        current.ai.provider = typer.prompt("AI provider (none/anthropic/openai)", default=current.ai.provider)
        if current.ai.provider != "none":
            current.ai.model = typer.prompt("Model", default=current.ai.model or "") or None
        current.ocr.backend = typer.prompt("OCR backend (tesseract/textract)", default=current.ocr.backend)
        current.queue.workers = int(typer.prompt("Worker count", default=str(current.queue.workers)))
        save_config(current, path)
        rprint(f"\n[green]Configuration saved to {path}[/green]")
        rprint("[dim]API keys are read from EVIDOC_AI_API_KEY and are never written to disk.[/dim]")
    elif show:
        if path.exists():
            rprint(json.dumps(json.loads(path.read_text()), indent=2))
        else:
            rprint("[yellow]No configuration found. Run 'evidoc config --init' to create one.[/yellow]")
    else:
        rprint("Use --init to create configuration or --show to display it.")


# === Ingestion ===


@app.command()
def ingest(
    path: Path = typer.Argument(..., help="File or directory to ingest"),
    case_id: Optional[str] = typer.Option(None, "--case", help="Case the evidence belongs to"),
    recursive: bool = typer.Option(True, "--recursive/--no-recursive", help="Recurse into directories"),
):
    """Store documents and register them as PENDING evidence."""
    components = _components()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task(f"Ingesting {path.name}...", total=None)
        try:
            if path.is_dir():
                results = asyncio.run(components.ingester.ingest_directory(path, case_id=case_id, recursive=recursive))
            else:
                results = [asyncio.run(components.ingester.ingest_file(path, case_id=case_id))]
        except EvidocError as e:
            _fail(e)

    table = Table(title="Ingested Evidence")
    table.add_column("Evidence ID", style="cyan")
    table.add_column("File")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for result in results:
        table.add_row(result.evidence_id, result.filename, result.mime_type, f"{result.file_size:,}")
    console.print(table)
    rprint(f"[green]✓ Ingested {len(results)} file(s)[/green]")


# === Processing ===


@app.command()
def process(
    evidence_id: str = typer.Argument(..., help="Evidence ID to process"),
    force: bool = typer.Option(False, "--force", help="Reprocess even if already completed"),
    skip_ocr: bool = typer.Option(False, "--skip-ocr"),
    skip_classification: bool = typer.Option(False, "--skip-classification"),
    skip_entities: bool = typer.Option(False, "--skip-entities"),
    skip_summarization: bool = typer.Option(False, "--skip-summarization"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Process a document now and wait for the result."""
    components = _components()
    options = {
        "skip_ocr": skip_ocr,
        "skip_classification": skip_classification,
        "skip_entities": skip_entities,
        "skip_summarization": skip_summarization,
    }

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Processing document...", total=None)
        try:
            result = asyncio.run(components.service.trigger_processing(
                evidence_id, run_async=False, options=options, force=force
            ))
        except EvidocError as e:
            _fail(e)

    if as_json:
        rprint(json.dumps(result, indent=2, default=str))
        return

    if result.get("coalesced"):
        rprint(f"[yellow]Already processed or in progress ({result['status']}). Use --force to rerun.[/yellow]")
        return

    if result["status"] == ProcessingStatus.FAILED.value:
        rprint(f"[red]✗ {result['error']}[/red]")
    else:
        rprint(f"[green]✓ Processed in {result['processingTimeMs']} ms[/green]")

    table = Table(title=f"Stages for {evidence_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Outcome")
    for stage, outcome in result["stages"].items():
        table.add_row(stage, outcome)
    console.print(table)

    if result.get("documentType"):
        rprint(f"  Type: {result['documentType']}")
    if result.get("summary"):
        rprint(f"  Summary: {result['summary']}")
    if result["status"] == ProcessingStatus.FAILED.value:
        raise typer.Exit(1)


@app.command("queue")
def queue_command(
    evidence_id: Optional[str] = typer.Argument(None, help="Evidence ID to queue"),
    case_id: Optional[str] = typer.Option(None, "--case", help="Queue every PENDING or FAILED document of a case"),
    force: bool = typer.Option(False, "--force", help="Reprocess even if already completed"),
):
    """Register processing jobs. Workers started by 'serve' or 'run' pick them up."""
    if not evidence_id and not case_id:
        rprint("[yellow]Give an evidence ID or --case.[/yellow]")
        raise typer.Exit(2)

    components = _components()
    try:
        if case_id:
            result = asyncio.run(components.service.process_case_documents(case_id))
            rprint(f"[green]✓ Queued {result['queued']} document(s) for case {case_id}[/green]")
            for skipped in result["skipped"]:
                rprint(f"  [yellow]skipped {skipped['evidenceId']}: {skipped['reason']}[/yellow]")
        else:
            result = asyncio.run(components.service.trigger_processing(evidence_id, run_async=True, force=force))
            style = "yellow" if result["coalesced"] else "green"
            rprint(f"[{style}]{result['message']}[/{style}] (job {result['jobId']})")
    except EvidocError as e:
        _fail(e)


@app.command()
def run(
    case_id: Optional[str] = typer.Option(None, "--case", help="Only process this case"),
):
    """Queue every PENDING or FAILED document and work through the queue."""
    components = _components()
    service = components.service

    async def _run() -> dict:
        await service.start()
        try:
            if case_id:
                queued = await service.process_case_documents(case_id)
            else:
                job_ids = []
                for evidence in components.repository.list_evidence(
                    statuses=[ProcessingStatus.PENDING, ProcessingStatus.FAILED]
                ):
                    job_ids.append(await components.processor.queue(evidence.id))
                queued = {"queued": len(job_ids), "jobIds": job_ids}
            await service.queue.join()
            return queued
        finally:
            await service.stop()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Processing queued documents...", total=None)
        try:
            queued = asyncio.run(_run())
        except EvidocError as e:
            _fail(e)

    rprint(f"[green]✓ Worked through {queued['queued']} job(s)[/green]")
    _print_stats(asyncio.run(service.queue_stats()))


@app.command()
def status(
    evidence_id: str = typer.Argument(..., help="Evidence ID"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status as JSON"),
):
    """Show processing status and stored outputs for a document."""
    components = _components()
    try:
        result = asyncio.run(components.service.get_processing_status(evidence_id))
    except EvidocError as e:
        _fail(e)

    if as_json:
        rprint(json.dumps(result, indent=2, default=str))
        return

    table = Table(title=f"Evidence {evidence_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", _styled(result["status"]))
    if result["progress"] is not None:
        table.add_row("Progress", f"{result['progress']}% ({result['currentStep']})")
    table.add_row("Document type", str(result["documentType"] or "-"))
    if result["ocrConfidence"] is not None:
        table.add_row("OCR confidence", f"{result['ocrConfidence']:.1f}%")
    table.add_row("Processed at", str(result["processedAt"] or "-"))
    if result["error"]:
        table.add_row("Error", f"[red]{result['error']}[/red]")
    if result["summary"]:
        table.add_row("Summary", result["summary"])
    for point in result["keyPoints"] or []:
        table.add_row("Key point", point)
    console.print(table)


@app.command()
def cancel(evidence_id: str = typer.Argument(..., help="Evidence ID")):
    """Cancel the queued or running job of a document."""
    components = _components()
    result = asyncio.run(components.service.cancel(evidence_id))
    if result["cancelled"]:
        rprint(f"[green]✓ Cancellation requested for {evidence_id}[/green]")
    else:
        rprint(f"[yellow]No active job for {evidence_id}[/yellow]")


@app.command("retry-failed")
def retry_failed(case_id: Optional[str] = typer.Option(None, "--case", help="Only reset this case")):
    """Reset FAILED documents to PENDING."""
    components = _components()
    result = asyncio.run(components.service.retry_failed(case_id))
    rprint(f"[green]✓ Reset {result['reset']} document(s)[/green]")


@app.command()
def cleanup(days: Optional[int] = typer.Option(None, "--days", help="Age in days (default from config)")):
    """Delete completed jobs older than the cutoff."""
    components = _components()
    result = asyncio.run(components.service.cleanup_jobs(days))
    rprint(f"[green]✓ Deleted {result['deleted']} job(s) older than {result['olderThanDays']} day(s)[/green]")


def _print_stats(stats: dict) -> None:
    table = Table(title="Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Documents", justify="right")
    for name, count in stats["byStatus"].items():
        table.add_row(_styled(name), str(count))
    console.print(table)

    jobs = ", ".join(f"{name}={count}" for name, count in stats["jobs"].items())
    rprint(f"  Jobs: {jobs}")


@app.command()
def stats():
    """Show document and job counts."""
    components = _components()
    _print_stats(asyncio.run(components.service.queue_stats()))


# === Server ===


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to run on"),
):
    """Start the HTTP API with its worker pool."""
    import uvicorn

    from .server import create_app

    config = _load()
    components = build_service(config)
    host = host or config.server.host
    port = port or config.server.port

    rprint("\n[bold green]evidoc[/bold green]")
    rprint("─" * 50)
    rprint(f"[cyan]API:[/cyan]      http://{host}:{port}/api")
    rprint(f"[cyan]Database:[/cyan] {config.resolved_database_url}")
    rprint(f"[cyan]Workers:[/cyan]  {config.queue.workers}")
    rprint("─" * 50)
    rprint("[dim]Press Ctrl+C to stop the server.[/dim]\n")

    uvicorn.run(create_app(components.service), host=host, port=port, log_level="warning")


# === Main Entry Point ===


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
