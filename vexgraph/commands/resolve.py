import json
from pathlib import Path

import dotenv
import structlog
import typer
from rich.table import Table

from vexgraph.commands.db import check_backend
from vexgraph.core.container import get_container
from vexgraph.core.decorators import handle_errors
from vexgraph.core.logging import console
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.identity import parse_identity
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import ResolvedStatus
from vexgraph.models.statement import Status
from vexgraph.services.ingest_service import load_document
from vexgraph.services.normalizer_service import normalize_sbom

logger = structlog.get_logger('resolve_command')

dotenv.load_dotenv()

STATUS_STYLES = {
    Status.AFFECTED: 'bold red',
    Status.UNDER_INVESTIGATION: 'yellow',
    Status.NOT_AFFECTED: 'green',
    Status.FIXED: 'green',
}


def to_json(results: dict[tuple[PackageIdentity, object], ResolvedStatus]) -> list[dict]:
    rows = []
    for (identity, vulnerability), resolved in results.items():
        provenance = resolved.statement.provenance
        rows.append({
            'package': identity.canonical(),
            'vulnerability': vulnerability.id,
            'severity': vulnerability.severity,
            'status': resolved.status.value,
            'range': str(resolved.statement.range),
            'source': provenance.document_id if provenance else None,
            'justification': resolved.statement.justification,
            'diagnostics': resolved.diagnostics,
        })
    return rows


@handle_errors
def main(
    sbom: Path | None = typer.Option(None, '--sbom', help='SPDX JSON file to resolve without ingesting it', exists=True, dir_okay=False),
    document: str | None = typer.Option(None, '--document', help='Id of an ingested SPDX document'),
    purls: list[str] = typer.Option([], '--purl', help='Package URL or CPE to resolve (repeatable)'),
    vulnerabilities: list[str] = typer.Option([], '--vulnerability', '-v', help='Restrict to these vulnerability ids'),
    as_json: bool = typer.Option(False, '--json', help='Print JSON instead of a table'),
):
    """Resolve the vulnerability status of SBOM packages."""
    if sbom is None and document is None and not purls:
        raise ValueError('Give at least one of --sbom, --document or --purl')

    container = get_container()
    check_backend(container)
    service = container.get_correlation_service()
    vulnerability_ids = vulnerabilities or None

    identities: list[PackageIdentity] = [parse_identity(p) for p in purls]
    if sbom is not None:
        normalized = normalize_sbom(load_document(sbom, DocumentType.SPDX))
        identities.extend(identity for identity, _ in normalized.entries)
    if document is not None:
        repository = container.get_repository()
        document_id = document if document.startswith('spdx:') else f'spdx:{document}'
        if repository.get_document(document_id) is None:
            raise ValueError(f'Unknown SBOM document {document_id!r}')
        identities.extend(p.identity for p in repository.get_sbom_packages(document_id))

    results = service.resolve(identities, vulnerability_ids)

    if as_json:
        console.print_json(json.dumps(to_json(results)))
        return

    if not results:
        console.print(f'[green]No applicable statements for {len(set(identities))} package(s).[/]')
        return

    table = Table(title='Resolved Vulnerability Status')
    table.add_column('Package', style='cyan')
    table.add_column('Vulnerability', style='magenta')
    table.add_column('Status')
    table.add_column('Source', style='dim')
    table.add_column('Notes', style='dim')

    ordered = sorted(results.items(), key=lambda item: (item[0][0].canonical(), item[0][1].id))
    for (identity, vulnerability), resolved in ordered:
        style = STATUS_STYLES[resolved.status]
        provenance = resolved.statement.provenance
        notes = '; '.join(resolved.diagnostics) or (resolved.statement.justification or '')
        table.add_row(
            identity.canonical(), vulnerability.id,
            f'[{style}]{resolved.status.value}[/]',
            provenance.document_id if provenance else '-',
            notes,
        )
    console.print(table)
