from datetime import datetime
from datetime import timezone

import pytest

from vexgraph.core.errors import VexGraphError
from vexgraph.models.csaf import CsafDocument
from vexgraph.models.identity import parse_identity
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import Provenance
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Status
from vexgraph.models.statement import Vulnerability
from vexgraph.models.version import VersionRange
from vexgraph.services.correlation_service import Candidate
from vexgraph.services.correlation_service import CorrelationService
from vexgraph.services.correlation_service import reduce_statements
from vexgraph.services.ingest_service import IngestService
from vexgraph.services.normalizer_service import normalize_sbom

LIB = 'pkg:maven/org.example/lib'


def candidate(status, document_id='csaf:A', day=1):
    statement = Statement(
        package=parse_identity(LIB),
        range=VersionRange.any(),
        vulnerability_id='CVE-2024-0001',
        status=status,
        provenance=Provenance(document_id, DocumentType.CSAF, datetime(2024, 1, day, tzinfo=timezone.utc)),
    )
    return Candidate(statement, status)


def by_key(results):
    return {(identity.canonical(), vulnerability.id): r for (identity, vulnerability), r in results.items()}


@pytest.fixture
def service(repository):
    return CorrelationService(repository, max_workers=2)


@pytest.fixture
def ingest(repository):
    return IngestService(repository, max_workers=2)


class TestReduceStatements:
    """Status precedence and deterministic tie-breaking."""

    def test_no_candidates(self):
        assert reduce_statements(Vulnerability('CVE-2024-0001'), []) is None

    @pytest.mark.parametrize('statuses, expected', [
        ([Status.AFFECTED, Status.FIXED], Status.FIXED),
        ([Status.AFFECTED, Status.NOT_AFFECTED], Status.NOT_AFFECTED),
        ([Status.UNDER_INVESTIGATION, Status.AFFECTED], Status.AFFECTED),
        ([Status.NOT_AFFECTED, Status.FIXED, Status.UNDER_INVESTIGATION], Status.FIXED),
    ])
    def test_precedence(self, statuses, expected):
        candidates = [candidate(s, f"csaf:{i}") for i, s in enumerate(statuses)]
        resolved = reduce_statements(Vulnerability('CVE-2024-0001'), candidates)
        assert resolved.status == expected
        assert len(resolved.statements) == len(statuses)

    def test_order_does_not_matter(self):
        candidates = [candidate(Status.AFFECTED, 'csaf:A'), candidate(Status.NOT_AFFECTED, 'csaf:B')]
        forward = reduce_statements(Vulnerability('CVE-2024-0001'), candidates)
        backward = reduce_statements(Vulnerability('CVE-2024-0001'), candidates[::-1])
        assert forward.statement == backward.statement

    def test_latest_ingestion_wins_a_tie(self):
        older = candidate(Status.AFFECTED, 'csaf:B', day=1)
        newer = candidate(Status.AFFECTED, 'csaf:A', day=2)
        resolved = reduce_statements(Vulnerability('CVE-2024-0001'), [older, newer])
        assert resolved.statement.provenance.document_id == 'csaf:A'

    def test_greatest_document_id_breaks_remaining_ties(self):
        a = candidate(Status.AFFECTED, 'csaf:A')
        b = candidate(Status.AFFECTED, 'csaf:B')
        resolved = reduce_statements(Vulnerability('CVE-2024-0001'), [b, a])
        assert resolved.statement.provenance.document_id == 'csaf:B'


class TestCorrelationService:
    """End-to-end resolution against a SQLite graph."""

    def test_version_inside_range_is_affected(self, ingest, service, csaf_document):
        ingest.ingest_advisory(csaf_document)

        results = by_key(service.resolve([parse_identity(f"{LIB}@1.2.3")]))

        resolved = results[(f"{LIB}@1.2.3", 'CVE-2024-0001')]
        assert resolved.status == Status.AFFECTED
        assert resolved.vulnerability.severity == 'HIGH'
        assert not resolved.indeterminate

    def test_fixed_version(self, ingest, service, csaf_document):
        ingest.ingest_advisory(csaf_document)
        results = by_key(service.resolve([parse_identity(f"{LIB}@1.3.0")]))
        assert results[(f"{LIB}@1.3.0", 'CVE-2024-0001')].status == Status.FIXED

    def test_version_outside_every_range(self, ingest, service, csaf_document):
        ingest.ingest_advisory(csaf_document)
        assert service.resolve([parse_identity(f"{LIB}@0.9.0")]) == {}

    def test_not_affected_from_second_source_wins(self, ingest, service, csaf_document, csaf_data):
        ingest.ingest_advisory(csaf_document)
        csaf_data['document']['tracking']['id'] = 'OTHER-2024-0001'
        csaf_data['vulnerabilities'][0]['product_status'] = {'known_not_affected': ['LIB-OLD']}
        ingest.ingest_advisory(CsafDocument.model_validate(csaf_data))

        resolved = by_key(service.resolve([parse_identity(f"{LIB}@1.2.3")]))[(f"{LIB}@1.2.3", 'CVE-2024-0001')]

        assert resolved.status == Status.NOT_AFFECTED
        assert resolved.statement.provenance.document_id == 'csaf:OTHER-2024-0001'
        assert len(resolved.statements) == 2

    def test_version_with_spaces(self, ingest, service, csaf_data):
        branch = csaf_data['product_tree']['branches'][0]['branches'][0]['branches'][1]
        branch['name'] = '1.3.0 SP1'
        branch['product']['product_identification_helper']['purl'] = LIB
        ingest.ingest_advisory(CsafDocument.model_validate(csaf_data))

        results = by_key(service.resolve([parse_identity(f"{LIB}@1.2.3")]))

        assert results[(f"{LIB}@1.2.3", 'CVE-2024-0001')].status == Status.AFFECTED

    def test_incomparable_version_is_indeterminate(self, ingest, service, csaf_document):
        ingest.ingest_advisory(csaf_document)

        results = by_key(service.resolve([parse_identity(f"{LIB}@abc-snapshot")]))

        resolved = results[(f"{LIB}@abc-snapshot", 'CVE-2024-0001')]
        assert resolved.status == Status.UNDER_INVESTIGATION
        assert resolved.indeterminate
        assert 'abc-snapshot' in resolved.diagnostics[0]

    @pytest.mark.parametrize('query, expected', [
        ('cpe:2.3:a:apache:log4j:2.14.1:*:*:*:*:*:*:*', Status.AFFECTED),
        ('cpe:/a:apache:log4j:2.14.1', Status.AFFECTED),
        ('cpe:2.3:a:apache:log4j:2.15.0:*:*:*:*:*:*:*', Status.NOT_AFFECTED),
    ])
    def test_cpe_queries(self, ingest, service, cve_record, query, expected):
        ingest.ingest_cve(cve_record)
        [resolved] = service.resolve([parse_identity(query)]).values()
        assert resolved.status == expected
        assert resolved.vulnerability.id == 'CVE-2021-44228'

    def test_cpe_past_the_fix(self, ingest, service, cve_record):
        ingest.ingest_cve(cve_record)
        assert service.resolve([parse_identity('cpe:2.3:a:apache:log4j:2.16.0:*:*:*:*:*:*:*')]) == {}

    def test_vulnerability_filter(self, ingest, service, csaf_document):
        ingest.ingest_advisory(csaf_document)
        identity = parse_identity(f"{LIB}@1.2.3")
        assert service.resolve([identity], vulnerability_ids=['CVE-1999-0001']) == {}
        assert len(service.resolve([identity], vulnerability_ids=['cve-2024-0001'])) == 1

    def test_resolve_normalized_sbom(self, ingest, service, csaf_document, spdx_document):
        ingest.ingest_advisory(csaf_document)
        results = by_key(service.resolve(normalize_sbom(spdx_document)))
        assert list(results) == [(f"{LIB}@1.2.3", 'CVE-2024-0001')]

    def test_resolve_stored_document(self, ingest, service, csaf_document, spdx_document):
        ingest.ingest_advisory(csaf_document)
        ingest.ingest_sbom(spdx_document)

        results = by_key(service.resolve_document('https://example.com/spdx/app-1.0.0'))

        assert results[(f"{LIB}@1.2.3", 'CVE-2024-0001')].status == Status.AFFECTED
        assert len(results) == 1

    def test_unknown_document(self, service):
        with pytest.raises(VexGraphError):
            service.resolve_document('spdx:https://example.com/missing')
