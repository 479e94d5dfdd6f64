from collections.abc import Callable
from collections.abc import Iterable
from concurrent.futures import as_completed
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from dataclasses import replace
from pathlib import Path

import structlog
from pydantic import BaseModel
from pydantic import ValidationError

from vexgraph.core.errors import ParseError
from vexgraph.core.errors import VexGraphError
from vexgraph.core.repository import GraphRepository
from vexgraph.core.stats import IngestStats
from vexgraph.models.csaf import CsafDocument
from vexgraph.models.cve import CveRecord
from vexgraph.models.spdx import SpdxDocument
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import IngestionReport
from vexgraph.services.normalizer_service import normalize_advisory
from vexgraph.services.normalizer_service import normalize_cve_record
from vexgraph.services.normalizer_service import normalize_sbom
from vexgraph.services.normalizer_service import NormalizedAdvisory
from vexgraph.services.normalizer_service import NormalizedSbom

logger = structlog.get_logger('ingest_service')

MODELS: dict[DocumentType, type[BaseModel]] = {
    DocumentType.CSAF: CsafDocument,
    DocumentType.SPDX: SpdxDocument,
    DocumentType.CVE: CveRecord,
}


def load_document(path: Path, document_type: DocumentType) -> BaseModel:
    """Read and validate one JSON document from disk."""
    model = MODELS[document_type]
    try:
        return model.model_validate_json(path.read_bytes())
    except ValidationError as e:
        raise ParseError(
            f"{path} is not a valid {document_type.value.upper()} document "
            f"({e.error_count()} validation error(s))",
        ) from e


@dataclass
class FileOutcome:
    path: Path
    report: IngestionReport | None = None
    error: str | None = None


class IngestService:
    """Normalizes documents and writes each one in a single transaction."""

    def __init__(self, repository: GraphRepository, max_workers: int = 8):
        self.repository = repository
        self.max_workers = max_workers

    def ingest_advisory(self, document: CsafDocument) -> IngestionReport:
        return self._store_advisory(normalize_advisory(document))

    def ingest_cve(self, record: CveRecord) -> IngestionReport:
        return self._store_advisory(normalize_cve_record(record))

    def ingest_sbom(self, document: SpdxDocument) -> IngestionReport:
        return self._store_sbom(normalize_sbom(document))

    def ingest(self, document: BaseModel) -> IngestionReport:
        if isinstance(document, CsafDocument):
            return self.ingest_advisory(document)
        if isinstance(document, CveRecord):
            return self.ingest_cve(document)
        if isinstance(document, SpdxDocument):
            return self.ingest_sbom(document)
        raise TypeError(f"Unsupported document model {type(document).__name__}")

    def ingest_file(self, path: Path, document_type: DocumentType) -> IngestionReport:
        return self.ingest(load_document(path, document_type))

    def ingest_many(
        self,
        paths: Iterable[Path],
        document_type: DocumentType,
        progress_callback: Callable[[FileOutcome], None] | None = None,
    ) -> tuple[list[FileOutcome], IngestStats]:
        """Ingest files in parallel; a failing file never stops the others."""
        stats = IngestStats()
        outcomes: list[FileOutcome] = []
        paths = list(paths)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.ingest_file, path, document_type): path
                for path in paths
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    outcome = FileOutcome(path, report=future.result())
                    stats.record(outcome.report)
                except (VexGraphError, OSError) as e:
                    logger.error('Document failed', path=str(path), kind=type(e).__name__, error=str(e))
                    outcome = FileOutcome(path, error=str(e))
                    stats.inc_failed()
                outcomes.append(outcome)
                if progress_callback:
                    progress_callback(outcome)

        order = {path: index for index, path in enumerate(paths)}
        outcomes.sort(key=lambda o: order[o.path])
        return outcomes, stats

    # -- Storage --

    def _store_advisory(self, normalized: NormalizedAdvisory) -> IngestionReport:
        document = replace(normalized.document, digest=normalized.digest())
        report = IngestionReport(
            document_id=document.id,
            document_type=document.type,
            statements=len(normalized.statements),
            edges=len(normalized.edges),
            vulnerabilities=len(normalized.vulnerabilities),
            failures=list(normalized.failures),
        )
        vulnerability_ids = [v.id for v in normalized.vulnerabilities]

        with self.repository.document_lock(document.id), self.repository.transaction() as tx:
            stored = tx.get_document(document.id)
            if stored is not None and stored.digest == document.digest:
                logger.info('Document unchanged', document_id=document.id)
                report.changed = False
                return report

            for vulnerability in normalized.vulnerabilities:
                tx.upsert_vulnerability(vulnerability)
            for statement in normalized.statements:
                tx.upsert_package(statement.package)
            for edge in normalized.edges:
                if edge.source is not None:
                    tx.upsert_package(edge.source)
                tx.upsert_package(edge.target)
            report.changed = tx.replace_statements_for_document(
                document, normalized.statements, normalized.edges,
                vulnerability_ids=vulnerability_ids,
            )

        logger.info(
            'Advisory ingested', document_id=document.id,
            statements=report.statements, edges=report.edges,
            failures=len(report.failures),
        )
        return report

    def _store_sbom(self, normalized: NormalizedSbom) -> IngestionReport:
        document = replace(normalized.document, digest=normalized.digest())
        report = IngestionReport(
            document_id=document.id,
            document_type=document.type,
            edges=len(normalized.edges),
            packages=len(normalized.packages),
            failures=list(normalized.failures),
        )

        with self.repository.document_lock(document.id), self.repository.transaction() as tx:
            stored = tx.get_document(document.id)
            if stored is not None and stored.digest == document.digest:
                logger.info('Document unchanged', document_id=document.id)
                report.changed = False
                return report

            for package in normalized.packages:
                tx.upsert_package(package.identity)
            for edge in normalized.edges:
                if edge.source is not None:
                    tx.upsert_package(edge.source)
                tx.upsert_package(edge.target)
            report.changed = tx.replace_statements_for_document(
                document, (), normalized.edges, sbom_packages=normalized.packages,
            )

        logger.info(
            'SBOM ingested', document_id=document.id,
            packages=report.packages, edges=report.edges,
            failures=len(report.failures),
        )
        return report
