from pathlib import Path

import dotenv
import structlog
import typer
from rich.progress import BarColumn
from rich.progress import MofNCompleteColumn
from rich.progress import Progress
from rich.progress import SpinnerColumn
from rich.progress import TaskProgressColumn
from rich.progress import TextColumn
from rich.progress import TimeElapsedColumn
from rich.table import Table

from vexgraph.commands.db import check_backend
from vexgraph.core.container import get_container
from vexgraph.core.decorators import handle_errors
from vexgraph.core.logging import console
from vexgraph.models.statement import DocumentType
from vexgraph.services.ingest_service import FileOutcome

logger = structlog.get_logger('ingest_command')
app = typer.Typer(help='Ingest advisories, CVE records and SBOMs')

dotenv.load_dotenv()

FILES_ARGUMENT = typer.Argument(..., help='JSON files or directories of *.json files', exists=True)
FAILURES_OPTION = typer.Option(False, '--show-failures', help='List skipped items per document')


def expand_paths(paths: list[Path]) -> list[Path]:
    """Replace directories with the JSON files they contain, sorted."""
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(path.rglob('*.json')))
        else:
            files.append(path)
    return list(dict.fromkeys(files))


def print_outcomes(outcomes: list[FileOutcome], show_failures: bool) -> None:
    table = Table(title='Ingestion Report')
    table.add_column('File', style='cyan')
    table.add_column('Document', style='green')
    table.add_column('Statements', justify='right')
    table.add_column('Edges', justify='right')
    table.add_column('Packages', justify='right')
    table.add_column('Skipped Items', justify='right')
    table.add_column('Result')

    for outcome in outcomes:
        report = outcome.report
        if report is None:
            table.add_row(outcome.path.name, '-', '-', '-', '-', '-', f'[red]{outcome.error}[/]')
            continue
        result = '[green]stored[/]' if report.changed else '[dim]unchanged[/]'
        table.add_row(
            outcome.path.name, report.document_id,
            f'{report.statements:,}', f'{report.edges:,}', f'{report.packages:,}',
            f'{len(report.failures):,}', result,
        )
    console.print(table)

    if show_failures:
        for outcome in outcomes:
            if outcome.report is None or not outcome.report.failures:
                continue
            console.print(f'\n[bold]{outcome.report.document_id}[/]')
            for failure in outcome.report.failures:
                console.print(f'  [yellow]{failure.kind}[/] {failure.item}: {failure.reason}')


def run_ingest(paths: list[Path], document_type: DocumentType, show_failures: bool) -> None:
    container = get_container()
    check_backend(container)
    repository = container.get_repository()
    repository.ensure_schema()
    service = container.get_ingest_service()

    files = expand_paths(paths)
    if not files:
        console.print('[yellow]No JSON files found.[/]')
        return

    with Progress(
        SpinnerColumn(),
        TextColumn('[progress.description]{task.description}'),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TextColumn('•'),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(
            f'Ingesting {document_type.value.upper()}...', total=len(files),
        )
        outcomes, stats = service.ingest_many(
            files, document_type,
            progress_callback=lambda _: progress.advance(task),
        )

    print_outcomes(outcomes, show_failures)
    logger.info(
        'Ingestion Complete',
        documents=stats.documents,
        unchanged=stats.unchanged,
        statements=stats.statements,
        edges=stats.edges,
        packages=stats.packages,
        item_failures=stats.item_failures,
        failed=stats.failed,
        elapsed=f'{stats.elapsed_time:.2f}s',
    )
    if stats.failed:
        raise typer.Exit(1)


@app.command()
@handle_errors
def csaf(
    files: list[Path] = FILES_ARGUMENT,
    show_failures: bool = FAILURES_OPTION,
):
    """Ingest CSAF/VEX advisories."""
    run_ingest(files, DocumentType.CSAF, show_failures)


@app.command()
@handle_errors
def spdx(
    files: list[Path] = FILES_ARGUMENT,
    show_failures: bool = FAILURES_OPTION,
):
    """Ingest SPDX 2.x JSON SBOMs."""
    run_ingest(files, DocumentType.SPDX, show_failures)


@app.command()
@handle_errors
def cve(
    files: list[Path] = FILES_ARGUMENT,
    show_failures: bool = FAILURES_OPTION,
):
    """Ingest CVE JSON 5 records."""
    run_ingest(files, DocumentType.CVE, show_failures)
