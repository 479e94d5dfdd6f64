import io
from datetime import datetime
from datetime import timezone
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
import typer
from clickhouse_connect.driver.exceptions import DatabaseError
from rich.console import Console
from structlog.testing import capture_logs

from vexgraph.core.clickhouse import check_clickhouse_connection
from vexgraph.core.clickhouse import ClickHouseGraphRepository
from vexgraph.core.config import DatabaseConfig
from vexgraph.core.errors import TransactionError
from vexgraph.core.schema import CLICKHOUSE_DOCUMENT_TABLES
from vexgraph.models.identity import parse_identity
from vexgraph.models.statement import DocumentRecord
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Status
from vexgraph.models.statement import Vulnerability
from vexgraph.models.version import VersionRange
from vexgraph.services.ingest_service import IngestService
from vexgraph.services.normalizer_service import normalize_advisory

STORED_AT = datetime(2024, 1, 1)


@pytest.fixture
def client():
    client = MagicMock()
    client.query.return_value.result_rows = []
    return client


@pytest.fixture
def repository(client):
    repo = ClickHouseGraphRepository(DatabaseConfig(host='localhost', password='secret'))
    repo._client = client
    return repo


def answer_documents(client, rows):
    """Return ``rows`` for documents lookups and nothing for other queries."""
    def query(sql, parameters=None):
        result = MagicMock()
        result.result_rows = rows if 'FROM documents' in sql else []
        return result
    client.query.side_effect = query


def inserted_tables(client):
    return [c.args[0] for c in client.insert.call_args_list]


def inserted_rows(client, table):
    for c in client.insert.call_args_list:
        if c.args[0] == table:
            return c.args[1]
    return None


class TestPublish:
    """Document replacement without transactions."""

    def test_rows_before_document_before_delete(self, repository, client, csaf_document):
        report = IngestService(repository).ingest_advisory(csaf_document)

        assert report.changed
        assert inserted_tables(client) == [
            'packages', 'vulnerabilities', 'statements', 'advisory_vulnerabilities', 'documents',
        ]
        calls = [name for name, _, _ in client.mock_calls if name in ('insert', 'command')]
        last_insert = len(calls) - 1 - calls[::-1].index('insert')
        assert calls.index('command') > last_insert

        deletes = [c for c in client.command.call_args_list if c.args[0].startswith('DELETE')]
        assert len(deletes) == len(CLICKHOUSE_DOCUMENT_TABLES)

    def test_statements_keep_range_columns(self, repository, client, csaf_document):
        IngestService(repository).ingest_advisory(csaf_document)

        [insert] = [c for c in client.insert.call_args_list if c.args[0] == 'statements']
        columns = insert.kwargs['column_names']
        rows = {row['status']: row for row in (dict(zip(columns, values)) for values in insert.args[1])}

        assert rows['fixed']['range_kind'] == 'exact'
        assert rows['fixed']['range_version'] == '1.3.0'
        affected = rows['affected']
        assert (affected['range_lower'], affected['range_upper']) == ('1.0.0', '1.3.0')
        assert affected['lower_inclusive'] and not affected['upper_inclusive']

    def test_rows_and_document_share_generation(self, repository, client, csaf_document):
        IngestService(repository).ingest_advisory(csaf_document)

        [document_row] = inserted_rows(client, 'documents')
        generation = document_row[4]
        assert {row[1] for row in inserted_rows(client, 'statements')} == {generation}
        for c in client.command.call_args_list:
            assert c.kwargs['parameters'] == {'id': 'csaf:EX-2024-0001', 'generation': generation}

    def test_generation_grows_past_stored_one(self, repository, client, csaf_document):
        stored_generation = 2 ** 62
        answer_documents(client, [
            ('csaf:EX-2024-0001', 'csaf', STORED_AT, 'old', 'stale-digest', stored_generation),
        ])

        IngestService(repository).ingest_advisory(csaf_document)

        [document_row] = inserted_rows(client, 'documents')
        assert document_row[4] == stored_generation + 1

    def test_unchanged_digest_writes_nothing(self, repository, client, csaf_document):
        digest = normalize_advisory(csaf_document).digest()
        answer_documents(client, [('csaf:EX-2024-0001', 'csaf', STORED_AT, 'old', digest, 7)])

        report = IngestService(repository).ingest_advisory(csaf_document)

        assert not report.changed
        client.insert.assert_not_called()
        client.command.assert_not_called()

    def test_missing_reference_publishes_nothing(self, repository, client):
        document = DocumentRecord('csaf:TEST-1', DocumentType.CSAF, datetime.now(timezone.utc), digest='x')
        statement = Statement(parse_identity('pkg:npm/left-pad'), VersionRange.any(), 'CVE-2024-0001', Status.AFFECTED)

        with pytest.raises(TransactionError):
            with repository.transaction() as tx:
                tx.replace_statements_for_document(document, [statement])

        client.insert.assert_not_called()

    def test_driver_errors_become_transaction_errors(self, repository, client, csaf_document):
        client.insert.side_effect = DatabaseError('boom')
        with pytest.raises(TransactionError):
            IngestService(repository).ingest_advisory(csaf_document)


class TestVulnerabilities:
    """Metadata merges with what is already stored."""

    PUBLISHED = datetime(2021, 12, 10, tzinfo=timezone.utc)

    def stored_row(self):
        return ('CVE-2021-44228', 'Log4Shell', None, self.PUBLISHED, None, None, 'CWE-502', {'en': 'Old text'})

    def test_new_values_merge_over_stored(self, repository, client):
        client.query.return_value.result_rows = [self.stored_row()]

        repository.write_vulnerabilities([
            Vulnerability('cve-2021-44228', severity='CRITICAL', descriptions={'de': 'Text'}),
        ])

        [row] = inserted_rows(client, 'vulnerabilities')
        assert row[:8] == [
            'CVE-2021-44228', 'Log4Shell', 'CRITICAL', self.PUBLISHED, None, None, 'CWE-502',
            {'en': 'Old text', 'de': 'Text'},
        ]

    def test_unchanged_metadata_is_not_rewritten(self, repository, client):
        client.query.return_value.result_rows = [self.stored_row()]
        repository.write_vulnerabilities([Vulnerability('CVE-2021-44228', title='Log4Shell')])
        client.insert.assert_not_called()

    def test_get_vulnerability(self, repository, client):
        client.query.return_value.result_rows = [self.stored_row()]
        vulnerability = repository.get_vulnerability('cve-2021-44228')
        assert vulnerability.cwe == 'CWE-502'
        assert vulnerability.published == self.PUBLISHED
        assert vulnerability.descriptions == {'en': 'Old text'}


class TestQueries:

    def statement_row(self, kind='range', version=None, lower='1.0.0', upper='1.3.0'):
        return (
            kind, version, lower, upper, True, False, 'generic', 'affected', None, 'CVE-2024-0001',
            'pkg:maven/org.example/lib', 'csaf:EX-2024-0001', 'csaf', STORED_AT,
        )

    def test_statements_join_current_generation(self, repository, client):
        client.query.return_value.result_rows = [self.statement_row()]

        [statement] = repository.query_statements('pkg:maven/org.example/lib')

        sql = client.query.call_args.args[0]
        assert 's.generation = d.generation' in sql
        assert 'FINAL' in sql
        assert statement.status == Status.AFFECTED
        assert statement.range.upper == '1.3.0'
        assert statement.provenance.ingested_at.tzinfo is not None

    def test_undecodable_row_is_skipped(self, repository, client):
        client.query.return_value.result_rows = [
            self.statement_row(kind='exact', lower=None, upper=None),
            self.statement_row(),
        ]

        with capture_logs() as captured:
            [statement] = repository.query_statements('pkg:maven/org.example/lib')

        assert statement.range.lower == '1.0.0'
        [warning] = [e for e in captured if e['event'] == 'Undecodable statement skipped']
        assert warning['document_id'] == 'csaf:EX-2024-0001'

    def test_empty_vulnerability_filter(self, repository, client):
        assert repository._query_statements(['pkg:npm/left-pad'], []) == []
        client.query.assert_not_called()

    def test_unknown_document(self, repository):
        assert repository.get_document('csaf:nope') is None


class TestConnectionCheck:

    def test_unreachable_server_exits(self):
        output = io.StringIO()
        with patch('vexgraph.core.clickhouse.socket.create_connection', side_effect=OSError('refused')):
            with pytest.raises(typer.Exit):
                check_clickhouse_connection(DatabaseConfig(host='nowhere'), Console(file=output))
        assert 'docker run' in output.getvalue()

    def test_missing_tables_exit(self):
        client = MagicMock()
        client.query.return_value.result_rows = [('packages',)]
        with patch('vexgraph.core.clickhouse.socket.create_connection'), \
                patch('vexgraph.core.clickhouse.clickhouse_connect.get_client', return_value=client):
            with pytest.raises(typer.Exit):
                check_clickhouse_connection(DatabaseConfig(), Console(file=io.StringIO()))

    def test_tables_not_required(self):
        with patch('vexgraph.core.clickhouse.socket.create_connection'), \
                patch('vexgraph.core.clickhouse.clickhouse_connect.get_client'):
            assert check_clickhouse_connection(DatabaseConfig(), Console(file=io.StringIO()), require_tables=False)
