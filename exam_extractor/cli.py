"""
CLI Interface
=============
Command-line interface for the exam extractor.

Usage:
    python -m exam_extractor extract <pdf_path> --section listening [options]
    python -m exam_extractor ocr <image_path>
    python -m exam_extractor status
    python -m exam_extractor validate <json_path> [--repair]
    python -m exam_extractor evaluate <text_path> --task task2
    python -m exam_extractor serve [--host] [--port]
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .engine import ExtractionEngine, ExtractorConfig, setup_logging
from .errors import ExtractorError
from .evaluation import WritingEvaluator
from .llm import ChatCompletionClient
from .models import Section, ValidationResult
from .ocr import OcrGateway
from .pipeline import NON_QUESTION_TYPES, PostProcessor, validate_required_fields

console = Console()

SECTION_CHOICES = [s.slug for s in Section]
OCR_CHOICES = ["doctr", "tesseract"]


@click.group()
@click.version_option(version=__version__, prog_name="exam-extractor")
def cli():
    """Exam Extractor: scanned IELTS papers to structured question JSON."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--section", "-s",
    default="listening",
    type=click.Choice(SECTION_CHOICES, case_sensitive=False),
    help="Exam section the PDF contains",
)
@click.option(
    "--output", "-o",
    default=None,
    help="Write the JSON response to this file",
)
@click.option(
    "--test-id",
    default=None,
    help="Prefix for stored image names",
)
@click.option(
    "--ocr-service",
    default=None,
    type=click.Choice(OCR_CHOICES),
    help="Primary OCR backend (env: OCR_SERVICE)",
)
@click.option("--doctr-url", default=None, help="docTR service URL (env: DOCTR_URL)")
@click.option("--model", default=None, help="OpenAI model (env: OPENAI_MODEL)")
@click.option("--uploads-dir", default=None, help="Image storage directory")
@click.option("--prompts-dir", default=None, help="Directory of prompt templates")
@click.option(
    "--dpi",
    default=400,
    type=int,
    help="Rasterization resolution",
)
@click.option(
    "--page-start",
    default=None,
    type=int,
    help="Start page (1-indexed)",
)
@click.option(
    "--page-end",
    default=None,
    type=int,
    help="End page (1-indexed, inclusive)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only the JSON response to stdout (for programmatic use)",
)
def extract(
    pdf_path: str,
    section: str,
    output: str,
    test_id: str,
    ocr_service: str,
    doctr_url: str,
    model: str,
    uploads_dir: str,
    prompts_dir: str,
    dpi: int,
    page_start: int,
    page_end: int,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Extract a structured exam document from a section PDF."""

    if json_output:
        log_level = "ERROR"

    page_range = None
    if page_start is not None or page_end is not None:
        page_range = (page_start or 1, page_end or 99999)

    config = ExtractorConfig.from_env(
        ocr_service=ocr_service,
        doctr_url=doctr_url,
        openai_model=model,
        uploads_dir=uploads_dir,
        prompts_dir=prompts_dir,
        image_dpi=dpi,
        page_range=page_range,
        log_level=log_level,
        log_file=log_file,
    )
    section_enum = Section.parse(section)

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Exam Extractor v{__version__}[/]\n"
                f"[dim]{section_enum.value}: {os.path.basename(pdf_path)}[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        engine = ExtractionEngine.from_config(config)

        if not json_output:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Running OCR...", total=None)

                def on_page(page_num: int, total_pages: int):
                    progress.update(
                        task,
                        total=total_pages,
                        completed=page_num,
                        description=f"OCR page {page_num}/{total_pages}",
                    )

                result = engine.process_pdf(
                    pdf_path, section_enum, test_id=test_id, progress_callback=on_page
                )
        else:
            result = engine.process_pdf(pdf_path, section_enum, test_id=test_id)

    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(1)

    response = result.to_response()

    if output:
        _write_json(response, output)

    if json_output:
        print(json.dumps(response, indent=2, ensure_ascii=False))
    elif result.success:
        _display_structure_summary(result.structure, result.uploaded_images)
        _display_validation_table(result.validation)
        if output:
            console.print(f"[dim]Saved: {output}[/]")
    else:
        console.print(f"[red]Extraction failed:[/] {result.error}")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("image_path", type=click.Path(exists=True))
@click.option(
    "--ocr-service",
    default=None,
    type=click.Choice(OCR_CHOICES),
    help="Primary OCR backend (env: OCR_SERVICE)",
)
@click.option("--doctr-url", default=None, help="docTR service URL (env: DOCTR_URL)")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output the OCR result as JSON",
)
def ocr(image_path: str, ocr_service: str, doctr_url: str, json_output: bool):
    """Run OCR on a single page image."""
    config = ExtractorConfig.from_env(ocr_service=ocr_service, doctr_url=doctr_url)
    setup_logging("ERROR" if json_output else config.log_level)
    gateway = _build_gateway(config)

    try:
        result = gateway.extract_text(image_path)
    except ExtractorError as e:
        console.print(f"[red]OCR failed:[/] {e}")
        sys.exit(1)

    if json_output:
        print(json.dumps(result.model_dump(), indent=2, ensure_ascii=False))
        return

    console.print(
        Panel(
            result.text or "[dim](no text)[/]",
            title=f"{result.service} | confidence {result.confidence:.2f} | "
                  f"{result.processing_time} ms",
            border_style="cyan",
        )
    )


@cli.command()
@click.option("--doctr-url", default=None, help="docTR service URL (env: DOCTR_URL)")
def status(doctr_url: str):
    """Show OCR backend configuration and availability."""
    config = ExtractorConfig.from_env(doctr_url=doctr_url)
    setup_logging("WARNING")
    service_status = _build_gateway(config).get_service_status()

    console.print()
    table = Table(title="OCR Services", border_style="cyan")
    table.add_column("Service", style="bold")
    table.add_column("Role")
    table.add_column("Available", justify="center")
    table.add_column("Details")

    for label, backend in service_status.services.items():
        name = label.lower()
        if name == service_status.primary_service:
            role = "primary"
        elif name == service_status.fallback_service:
            role = "fallback"
        else:
            role = "-"
        table.add_row(
            label,
            role,
            "[green]✓[/]" if backend.available else "[red]✗[/]",
            backend.url or backend.version or "",
        )

    console.print(table)
    configuration = ", ".join(
        f"{k}={v}" for k, v in service_status.configuration.items()
    )
    console.print(f"[dim]{configuration}[/]")
    console.print()


@cli.command()
@click.argument("json_path", type=click.Path(exists=True))
@click.option(
    "--section", "-s",
    default=None,
    type=click.Choice(SECTION_CHOICES, case_sensitive=False),
    help="Section used for defaults when repairing (defaults to the document's)",
)
@click.option(
    "--repair",
    is_flag=True,
    default=False,
    help="Run the full post-processing pipeline before validating",
)
@click.option(
    "--output", "-o",
    default=None,
    help="Write the repaired document to this file (with --repair)",
)
def validate(json_path: str, section: str, repair: bool, output: str):
    """Validate a previously extracted exam document."""

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    # Accept both a bare document and a full extraction response
    document = data.get("structure", data) if isinstance(data, dict) else data

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Validation Report[/]\n"
            f"[dim]File: {json_path}[/]",
            border_style="cyan",
        )
    )

    if repair:
        if section:
            section_enum = Section.parse(section)
        else:
            try:
                section_enum = Section.parse(document.get("section", ""))
            except (AttributeError, ValueError):
                section_enum = Section.LISTENING
        document, validation = PostProcessor().run(document, section_enum)
        if output:
            _write_json(document, output)
            console.print(f"[dim]Saved: {output}[/]")
    else:
        validation = validate_required_fields(document)

    if isinstance(document, dict):
        _display_structure_summary(document, [])
    _display_validation_table(validation)

    if not validation.valid:
        sys.exit(1)


@cli.command()
@click.argument("text_path", type=click.Path(exists=True))
@click.option(
    "--task",
    default="task2",
    type=click.Choice(["task1", "task2"]),
    help="Writing task type",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output the evaluation as JSON",
)
def evaluate(text_path: str, task: str, json_output: bool):
    """Score a Writing answer stored in a text file."""
    config = ExtractorConfig.from_env()
    setup_logging("ERROR" if json_output else config.log_level)
    text = Path(text_path).read_text(encoding="utf-8")

    evaluator = WritingEvaluator(
        ChatCompletionClient(
            model=config.evaluation_model, api_key=config.openai_api_key
        )
    )

    try:
        evaluation = evaluator.evaluate(text, task)
    except Exception as e:
        console.print(f"[red]Evaluation failed:[/] {e}")
        sys.exit(1)

    if json_output:
        print(json.dumps(
            evaluation.model_dump(by_alias=True), indent=2, ensure_ascii=False
        ))
        return

    console.print()
    table = Table(title=f"Writing {task.upper()} Evaluation", border_style="cyan")
    table.add_column("Criterion", style="bold")
    table.add_column("Band", justify="right")
    for criterion, score in evaluation.criteria.items():
        table.add_row(criterion, str(score))
    table.add_row("[bold]Overall[/]", f"[bold]{evaluation.overall_score}[/]")
    console.print(table)

    for highlight in evaluation.highlights:
        console.print(
            f"[yellow]{highlight.type}[/] \"{highlight.text}\" → {highlight.suggestion}"
        )
    if evaluation.summary:
        console.print()
        console.print(evaluation.summary)
    console.print()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=3001, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP microservice for the admin frontend."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Exam Extractor Microservice[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _build_gateway(config: ExtractorConfig) -> OcrGateway:
    return OcrGateway.from_settings(
        primary_service=config.ocr_service,
        fallback_service=config.ocr_fallback_service,
        doctr_url=config.doctr_url,
        timeout=config.ocr_timeout,
        max_retries=config.ocr_max_retries,
        retry_delay=config.ocr_retry_delay,
        tesseract_language=config.tesseract_language,
    )


def _write_json(data, path: str):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_structure_summary(structure: dict, uploaded_images):
    """Display one row per part with its question counts."""
    console.print()
    table = Table(
        title=f"{structure.get('section', '?')}, Test {structure.get('test', '?')}",
        border_style="cyan",
    )
    table.add_column("Part", style="bold", justify="right")
    table.add_column("Range")
    table.add_column("Questions", justify="right")
    table.add_column("Types")

    for part in structure.get("parts") or []:
        if not isinstance(part, dict):
            continue
        questions = part.get("questions")
        if not isinstance(questions, list):
            questions = []
        types_seen = [
            q.get("type") if isinstance(q.get("type"), str) else ""
            for q in questions if isinstance(q, dict)
        ]
        real = [t for t in types_seen if t not in NON_QUESTION_TYPES]
        types = sorted({t for t in real if t})
        table.add_row(
            str(part.get("part", "?")),
            str(part.get("questionsRange", "")),
            str(len(real)),
            ", ".join(types),
        )

    console.print(table)
    if uploaded_images:
        maps = sum(1 for img in uploaded_images if img.is_map)
        console.print(f"[dim]Images stored: {len(uploaded_images)} ({maps} map)[/]")
    console.print()


def _display_validation_table(validation: ValidationResult):
    """Display validation errors as a rich table."""
    if validation.valid:
        console.print("[green]✓ All required fields present[/]")
        console.print()
        return

    table = Table(title="Validation Errors", border_style="yellow")
    table.add_column("#", justify="right")
    table.add_column("Problem")
    for index, error in enumerate(validation.errors, start=1):
        table.add_row(str(index), error)

    console.print(table)
    console.print(f"[yellow]⚠ {len(validation.errors)} problem(s) to fix by hand[/]")
    console.print()


# ─── Entry point (for python -m exam_extractor.cli) ───────────────────────────


if __name__ == "__main__":
    cli()
