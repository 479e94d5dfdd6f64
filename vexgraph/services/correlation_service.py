"""Resolve the authoritative status of SBOM packages against stored statements.

For each package the versionless identity selects candidate statements,
the package's concrete version filters them through the version matcher, and
``reduce_statements`` picks one status per vulnerability:

    fixed > not_affected > affected > under_investigation

Ties go to the most recently ingested document, then to the greatest
document id, so the result never depends on storage order.
"""
from collections import defaultdict
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone

import structlog

from vexgraph.core.errors import ComparisonError
from vexgraph.core.errors import VexGraphError
from vexgraph.core.repository import GraphRepository
from vexgraph.models.identity import Cpe
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import normalize_vulnerability_id
from vexgraph.models.statement import ResolvedStatus
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Status
from vexgraph.models.statement import Vulnerability
from vexgraph.models.version import scheme_for
from vexgraph.services.matcher_service import matches
from vexgraph.services.normalizer_service import NormalizedSbom

logger = structlog.get_logger('correlation_service')

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Candidate:
    """A statement that applies to a package, with the status it contributes."""
    statement: Statement
    status: Status
    diagnostic: str | None = None

    @property
    def sort_key(self) -> tuple:
        provenance = self.statement.provenance
        ingested_at = provenance.ingested_at if provenance else _EPOCH
        document_id = provenance.document_id if provenance else ''
        return (self.status.precedence, ingested_at, document_id)


def reduce_statements(vulnerability: Vulnerability, candidates: list[Candidate]) -> ResolvedStatus | None:
    """Pick the winning candidate for one (package, vulnerability) pair."""
    if not candidates:
        return None
    winner = max(candidates, key=lambda c: c.sort_key)
    return ResolvedStatus(
        vulnerability=vulnerability,
        status=winner.status,
        statement=winner.statement,
        statements=[c.statement for c in candidates],
        diagnostics=[c.diagnostic for c in candidates if c.diagnostic],
    )


def package_version(identity: PackageIdentity) -> str | None:
    if isinstance(identity, Cpe):
        return identity.concrete_version
    return identity.version


def evaluate(identity: PackageIdentity, statements: Iterable[Statement]) -> dict[str, list[Candidate]]:
    """Filter statements by the identity's concrete version, grouped by vulnerability id."""
    version = package_version(identity)
    scheme = scheme_for(identity)
    grouped: dict[str, list[Candidate]] = defaultdict(list)
    for statement in statements:
        try:
            applies = matches(version, statement.range, scheme)
        except ComparisonError as e:
            source = statement.provenance.document_id if statement.provenance else 'unknown'
            diagnostic = (
                f"{identity.canonical()}: cannot compare version {version!r} "
                f"with {statement.range} from {source}: {e}"
            )
            logger.debug('Indeterminate comparison', diagnostic=diagnostic)
            grouped[statement.vulnerability_id].append(
                Candidate(statement, Status.UNDER_INVESTIGATION, diagnostic),
            )
            continue
        if applies:
            grouped[statement.vulnerability_id].append(Candidate(statement, statement.status))
    return grouped


class CorrelationService:
    def __init__(self, repository: GraphRepository, max_workers: int = 8):
        self.repository = repository
        self.max_workers = max_workers

    def resolve(
        self,
        sbom: NormalizedSbom | Iterable[PackageIdentity],
        vulnerability_ids: Iterable[str] | None = None,
    ) -> dict[tuple[PackageIdentity, Vulnerability], ResolvedStatus]:
        """Resolve every package of ``sbom`` against every stored vulnerability.

        ``vulnerability_ids`` restricts the result to those vulnerabilities.
        """
        if isinstance(sbom, NormalizedSbom):
            identities = [identity for identity, _ in sbom.entries]
        else:
            identities = list(sbom)
        identities = list(dict.fromkeys(identities))
        ids = None
        if vulnerability_ids is not None:
            ids = sorted({normalize_vulnerability_id(v) for v in vulnerability_ids})

        def candidates_for(identity: PackageIdentity) -> dict[str, list[Candidate]]:
            statements = self.repository.query_candidate_statements(identity, ids)
            return evaluate(identity, statements)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            per_package = list(executor.map(candidates_for, identities))

        vulnerabilities: dict[str, Vulnerability] = {}
        result: dict[tuple[PackageIdentity, Vulnerability], ResolvedStatus] = {}
        for identity, grouped in zip(identities, per_package):
            for vulnerability_id in sorted(grouped):
                vulnerability = vulnerabilities.get(vulnerability_id)
                if vulnerability is None:
                    vulnerability = (
                        self.repository.get_vulnerability(vulnerability_id)
                        or Vulnerability(vulnerability_id)
                    )
                    vulnerabilities[vulnerability_id] = vulnerability
                resolved = reduce_statements(vulnerability, grouped[vulnerability_id])
                if resolved is not None:
                    result[(identity, vulnerability)] = resolved

        logger.info(
            'Resolved', packages=len(identities), pairs=len(result),
            indeterminate=sum(1 for r in result.values() if r.indeterminate),
        )
        return result

    def resolve_document(
        self,
        document_id: str,
        vulnerability_ids: Iterable[str] | None = None,
    ) -> dict[tuple[PackageIdentity, Vulnerability], ResolvedStatus]:
        """Resolve the packages of an SBOM that was ingested earlier."""
        if not document_id.startswith(f"{DocumentType.SPDX}:"):
            document_id = f"{DocumentType.SPDX}:{document_id}"
        document = self.repository.get_document(document_id)
        if document is None:
            raise VexGraphError(f"Unknown SBOM document {document_id!r}")
        packages = self.repository.get_sbom_packages(document_id)
        return self.resolve([p.identity for p in packages], vulnerability_ids)
