import pytest

from vexgraph.core.errors import ParseError
from vexgraph.models.statement import DocumentType
from vexgraph.services.ingest_service import IngestService
from vexgraph.services.ingest_service import load_document


class TestLoadDocument:

    def test_valid_document(self, write_json, cve_data):
        path = write_json('cve.json', cve_data)
        record = load_document(path, DocumentType.CVE)
        assert record.cve_id == 'CVE-2021-44228'

    def test_invalid_document_raises_parse_error(self, write_json):
        path = write_json('broken.json', {'document': {'title': 'no tracking'}})
        with pytest.raises(ParseError) as excinfo:
            load_document(path, DocumentType.CSAF)
        assert 'CSAF' in str(excinfo.value)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'garbage.json'
        path.write_text('{not json', encoding='utf-8')
        with pytest.raises(ParseError):
            load_document(path, DocumentType.SPDX)


class TestIngestService:
    """Tests for batch ingestion."""

    def test_ingest_dispatches_on_model(self, repository, csaf_document, cve_record, spdx_document):
        service = IngestService(repository)
        assert service.ingest(csaf_document).document_id == 'csaf:EX-2024-0001'
        assert service.ingest(cve_record).document_id == 'cve:CVE-2021-44228'
        assert service.ingest(spdx_document).document_type == DocumentType.SPDX
        with pytest.raises(TypeError):
            service.ingest(object())

    def test_failing_file_does_not_stop_the_batch(self, repository, write_json, csaf_data, tmp_path):
        good = write_json('good.json', csaf_data)
        bad = write_json('bad.json', {'vulnerabilities': []})
        missing = tmp_path / 'missing.json'
        seen = []

        outcomes, stats = IngestService(repository, max_workers=2).ingest_many(
            [bad, good, missing], DocumentType.CSAF, progress_callback=seen.append,
        )

        assert [o.path for o in outcomes] == [bad, good, missing]
        assert outcomes[0].error and outcomes[2].error
        assert outcomes[1].report.statements == 2
        assert stats.documents == 1
        assert stats.failed == 2
        assert stats.statements == 2
        assert len(seen) == 3

    def test_empty_document_is_a_file_failure(self, repository, write_json, csaf_data):
        csaf_data['vulnerabilities'][0]['product_status'] = {'known_affected': ['NOPE']}
        path = write_json('empty.json', csaf_data)

        [outcome], stats = IngestService(repository).ingest_many([path], DocumentType.CSAF)

        assert outcome.report is None
        assert 'produced no statements' in outcome.error
        assert stats.failed == 1
        assert repository.get_document('csaf:EX-2024-0001') is None

    def test_unchanged_documents_are_counted(self, repository, write_json, cve_data):
        path = write_json('cve.json', cve_data)
        service = IngestService(repository)
        service.ingest_many([path], DocumentType.CVE)

        _, stats = service.ingest_many([path], DocumentType.CVE)

        assert stats.documents == 1
        assert stats.unchanged == 1
