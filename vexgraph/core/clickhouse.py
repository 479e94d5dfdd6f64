"""ClickHouse graph store and connection utilities.

ClickHouse has no multi-statement transactions. A writer buffers its work
and publishes each document replacement in three steps:

    1. insert the new rows tagged with a fresh generation number
    2. insert the document row carrying that generation (the swap)
    3. lightweight-DELETE rows of older generations

Readers join document-scoped rows on ``documents FINAL`` by generation, so
they see either the previous or the new set of a document, never a mix.
"""
import socket
import time
from collections.abc import Iterator
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone

import clickhouse_connect
import structlog
import typer
from clickhouse_connect.driver.client import Client
from clickhouse_connect.driver.exceptions import ClickHouseError
from clickhouse_connect.driver.exceptions import DatabaseError
from rich.console import Console

from vexgraph.core.config import DatabaseConfig
from vexgraph.core.errors import TransactionError
from vexgraph.core.repository import GraphRepository
from vexgraph.core.repository import GraphWriter
from vexgraph.core.repository import package_row
from vexgraph.core.repository import range_columns
from vexgraph.core.repository import STATEMENT_COLUMNS
from vexgraph.core.repository import statements_from_rows
from vexgraph.core.repository import VULNERABILITY_METADATA
from vexgraph.core.schema import CLICKHOUSE_DDL
from vexgraph.core.schema import CLICKHOUSE_DOCUMENT_TABLES
from vexgraph.core.schema import CLICKHOUSE_TABLES
from vexgraph.models.identity import ANY
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.identity import parse_identity
from vexgraph.models.statement import DocumentRecord
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import Edge
from vexgraph.models.statement import normalize_vulnerability_id
from vexgraph.models.statement import SbomPackage
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Vulnerability

logger = structlog.get_logger('clickhouse')

CURRENT_DOCUMENTS = '(SELECT id, type, ingested_at, generation FROM documents FINAL)'


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class _Replacement:
    document: DocumentRecord
    generation: int
    statements: Sequence[Statement]
    edges: Sequence[Edge]
    sbom_packages: Sequence[SbomPackage]
    vulnerability_ids: list[str]


@dataclass
class ClickHouseGraphWriter(GraphWriter):
    """Buffers writes until the owning transaction exits cleanly."""
    repository: 'ClickHouseGraphRepository'
    packages: dict[str, PackageIdentity] = field(default_factory=dict)
    vulnerabilities: dict[str, Vulnerability] = field(default_factory=dict)
    replacements: list[_Replacement] = field(default_factory=list)

    def upsert_package(self, identity: PackageIdentity) -> str:
        package_id = identity.identity_id()
        self.packages[package_id] = identity
        return package_id

    def upsert_vulnerability(self, vulnerability: Vulnerability) -> str:
        pending = self.vulnerabilities.get(vulnerability.id)
        if pending is not None:
            vulnerability = vulnerability.merged(pending)
        self.vulnerabilities[vulnerability.id] = vulnerability
        return vulnerability.id

    def get_document(self, document_id: str) -> DocumentRecord | None:
        return self.repository.get_document(document_id)

    def replace_statements_for_document(
        self,
        document: DocumentRecord,
        statements: Sequence[Statement],
        edges: Sequence[Edge] = (),
        sbom_packages: Sequence[SbomPackage] = (),
        vulnerability_ids: Sequence[str] = (),
    ) -> bool:
        existing = self.repository.current_document(document.id)
        if existing is not None:
            record, generation = existing
            if document.digest and record.digest == document.digest:
                logger.info('Document unchanged', document_id=document.id)
                return False
        else:
            generation = 0

        advisory_ids = sorted({normalize_vulnerability_id(v) for v in vulnerability_ids})
        package_ids = {s.package.identity_id() for s in statements}
        package_ids.update(e.target.identity_id() for e in edges)
        package_ids.update(e.source.identity_id() for e in edges if e.source is not None)
        package_ids.update(p.identity.identity_id() for p in sbom_packages)
        vulnerability_refs = {s.vulnerability_id for s in statements} | set(advisory_ids)

        missing_packages = self.repository.missing_ids('packages', package_ids - set(self.packages))
        missing_vulnerabilities = self.repository.missing_ids(
            'vulnerabilities', vulnerability_refs - set(self.vulnerabilities),
        )
        if missing_packages or missing_vulnerabilities:
            raise TransactionError(
                f"Document {document.id!r} references unknown rows: "
                f"{len(missing_packages)} package(s), "
                f"{len(missing_vulnerabilities)} vulnerability(ies) "
                f"{sorted(missing_vulnerabilities)[:5]}",
            )

        self.replacements.append(
            _Replacement(
                document=document,
                generation=max(time.time_ns(), generation + 1),
                statements=list(statements),
                edges=list(edges),
                sbom_packages=list(sbom_packages),
                vulnerability_ids=advisory_ids,
            ),
        )
        return True

    def flush(self) -> None:
        self.repository.write_packages(list(self.packages.values()))
        self.repository.write_vulnerabilities(list(self.vulnerabilities.values()))
        for replacement in self.replacements:
            self.repository.publish(replacement)


class ClickHouseGraphRepository(GraphRepository):
    """Graph store on ClickHouse ReplacingMergeTree tables."""

    def __init__(self, config: DatabaseConfig):
        super().__init__()
        self.config = config
        self._client: Client | None = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                **self.config.get_connection_params(),
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def ensure_schema(self) -> None:
        self.client.command(
            f"CREATE DATABASE IF NOT EXISTS {self.config.database}",
        )
        for ddl in CLICKHOUSE_DDL:
            self.client.command(ddl)

    def reset_schema(self) -> None:
        for table in CLICKHOUSE_TABLES:
            self.client.command(f'DROP TABLE IF EXISTS {table}')
        self.ensure_schema()

    @contextmanager
    def transaction(self) -> Iterator[ClickHouseGraphWriter]:
        writer = ClickHouseGraphWriter(self)
        yield writer
        try:
            writer.flush()
        except (ClickHouseError, DatabaseError) as e:
            logger.error('Publishing writes failed', error=str(e))
            raise TransactionError(f"ClickHouse write failed: {e}") from e

    # -- Write helpers used by the writer --

    def missing_ids(self, table: str, ids: set[str]) -> set[str]:
        if not ids:
            return set()
        rows = self.client.query(
            f'SELECT id FROM {table} FINAL WHERE id IN {{ids:Array(String)}}',
            parameters={'ids': sorted(ids)},
        ).result_rows
        return ids - {row[0] for row in rows}

    def write_packages(self, identities: list[PackageIdentity]) -> None:
        if not identities:
            return
        rows = [package_row(identity) for identity in identities]
        missing = self.missing_ids('packages', {row['id'] for row in rows})
        columns = ['id', 'key', 'scheme', 'type', 'namespace', 'name', 'version']
        data = [
            [row['id'], row['key'], row['scheme'], row['type'], row['namespace'] or '', row['name'], row['version']]
            for row in rows if row['id'] in missing
        ]
        if data:
            self.client.insert('packages', data, column_names=columns)

    def _select_vulnerabilities(self, ids: list[str]) -> dict[str, Vulnerability]:
        columns = ', '.join(('id', *VULNERABILITY_METADATA, 'descriptions'))
        rows = self.client.query(
            f'SELECT {columns} FROM vulnerabilities FINAL WHERE id IN {{ids:Array(String)}}',
            parameters={'ids': ids},
        ).result_rows
        found = {}
        for vuln_id, title, severity, published, modified, withdrawn, cwe, descriptions in rows:
            found[vuln_id] = Vulnerability(
                vuln_id,
                title=title,
                severity=severity,
                published=_aware(published) if published else None,
                modified=_aware(modified) if modified else None,
                withdrawn=_aware(withdrawn) if withdrawn else None,
                cwe=cwe,
                descriptions=dict(descriptions or {}),
            )
        return found

    def write_vulnerabilities(self, items: list[Vulnerability]) -> None:
        if not items:
            return
        stored = self._select_vulnerabilities(sorted(v.id for v in items))
        now = datetime.now(timezone.utc)
        data = []
        for item in items:
            previous = stored.get(item.id)
            merged = item.merged(previous) if previous is not None else item
            if previous is not None and merged.metadata() == previous.metadata():
                continue
            data.append([
                merged.id, merged.title, merged.severity, merged.published, merged.modified,
                merged.withdrawn, merged.cwe, merged.descriptions, now,
            ])
        if data:
            self.client.insert(
                'vulnerabilities', data,
                column_names=['id', *VULNERABILITY_METADATA, 'descriptions', 'updated_at'],
            )

    def publish(self, replacement: _Replacement) -> None:
        document = replacement.document
        generation = replacement.generation

        if replacement.statements:
            rows = []
            for s in replacement.statements:
                row = {
                    'document_id': document.id,
                    'generation': generation,
                    'package_id': s.package.identity_id(),
                    'package_key': s.package.canonical(),
                    'vulnerability_id': s.vulnerability_id,
                    **range_columns(s.range),
                    'status': s.status.value,
                    'justification': s.justification,
                }
                rows.append(list(row.values()))
            self.client.insert('statements', rows, column_names=list(row))
        if replacement.edges:
            self.client.insert(
                'edges',
                [
                    [
                        document.id, generation, e.kind.value,
                        e.source.canonical() if e.source is not None else '',
                        e.target.canonical(),
                    ]
                    for e in replacement.edges
                ],
                column_names=['document_id', 'generation', 'kind', 'source_key', 'target_key'],
            )
        if replacement.sbom_packages:
            self.client.insert(
                'sbom_packages',
                [
                    [document.id, generation, p.identity.canonical(), p.element_id, p.confidence]
                    for p in replacement.sbom_packages
                ],
                column_names=['document_id', 'generation', 'package_key', 'element_id', 'confidence'],
            )
        if replacement.vulnerability_ids:
            self.client.insert(
                'advisory_vulnerabilities',
                [[document.id, generation, v] for v in replacement.vulnerability_ids],
                column_names=['document_id', 'generation', 'vulnerability_id'],
            )

        # the swap: from here on readers see the new generation
        self.client.insert(
            'documents',
            [[document.id, document.type.value, document.name or '', document.digest, generation, document.ingested_at]],
            column_names=['id', 'type', 'name', 'digest', 'generation', 'ingested_at'],
        )

        for table in CLICKHOUSE_DOCUMENT_TABLES:
            self.client.command(
                f'DELETE FROM {table} WHERE document_id = {{id:String}} AND generation != {{generation:UInt64}}',
                parameters={'id': document.id, 'generation': generation},
            )
        logger.debug(
            'Document published', document_id=document.id, generation=generation,
            statements=len(replacement.statements), edges=len(replacement.edges),
        )

    # -- Queries --

    def current_document(self, document_id: str) -> tuple[DocumentRecord, int] | None:
        rows = self.client.query(
            'SELECT id, type, ingested_at, name, digest, generation '
            'FROM documents FINAL WHERE id = {id:String}',
            parameters={'id': document_id},
        ).result_rows
        if not rows:
            return None
        doc_id, doc_type, ingested_at, name, digest, generation = rows[0]
        record = DocumentRecord(
            id=doc_id,
            type=DocumentType(doc_type),
            ingested_at=_aware(ingested_at),
            name=name,
            digest=digest,
        )
        return record, generation

    def get_document(self, document_id: str) -> DocumentRecord | None:
        current = self.current_document(document_id)
        return current[0] if current is not None else None

    def get_vulnerability(self, vulnerability_id: str) -> Vulnerability | None:
        vulnerability_id = normalize_vulnerability_id(vulnerability_id)
        return self._select_vulnerabilities([vulnerability_id]).get(vulnerability_id)

    def _query_statements(self, package_keys: list[str], vulnerability_ids: list[str] | None) -> list[Statement]:
        params: dict = {'keys': package_keys}
        vuln_filter = ''
        if vulnerability_ids is not None:
            if not vulnerability_ids:
                return []
            vuln_filter = 'AND s.vulnerability_id IN {vulns:Array(String)}'
            params['vulns'] = vulnerability_ids
        statement_columns = ', '.join(f's.{name}' for name in STATEMENT_COLUMNS)
        query = f"""
        SELECT {statement_columns}, s.package_key, d.id, d.type, d.ingested_at
        FROM statements AS s
        INNER JOIN {CURRENT_DOCUMENTS} AS d
            ON s.document_id = d.id AND s.generation = d.generation
        WHERE s.package_key IN {{keys:Array(String)}} {vuln_filter}
        ORDER BY d.id
        """
        return statements_from_rows(self.client.query(query, parameters=params).result_rows)

    def _find_cpe_keys(self, part: str, vendor: str, product: str) -> list[str]:
        query = """
        SELECT DISTINCT key
        FROM packages FINAL
        WHERE scheme = 'cpe' AND version = {any:String}
          AND type IN {parts:Array(String)}
          AND namespace IN {vendors:Array(String)}
          AND name IN {products:Array(String)}
        """
        params = {
            'any': ANY,
            'parts': sorted({part, ANY}),
            'vendors': sorted({vendor, ANY}),
            'products': sorted({product, ANY}),
        }
        return [row[0] for row in self.client.query(query, parameters=params).result_rows]

    def get_sbom_packages(self, document_id: str) -> list[SbomPackage]:
        query = f"""
        SELECT p.package_key, p.element_id, p.confidence
        FROM sbom_packages AS p
        INNER JOIN {CURRENT_DOCUMENTS} AS d
            ON p.document_id = d.id AND p.generation = d.generation
        WHERE p.document_id = {{id:String}}
        ORDER BY p.element_id, p.package_key
        """
        return [
            SbomPackage(parse_identity(key), element_id, confidence)
            for key, element_id, confidence in self.client.query(
                query, parameters={'id': document_id},
            ).result_rows
        ]

    def get_stats(self) -> dict[str, int]:
        stats = {}
        for table in ('packages', 'vulnerabilities', 'documents'):
            stats[table] = self.client.query(f'SELECT count() FROM {table} FINAL').result_rows[0][0]
        for table in CLICKHOUSE_DOCUMENT_TABLES:
            stats[table] = self.client.query(
                f"""
                SELECT count() FROM {table} AS t
                INNER JOIN {CURRENT_DOCUMENTS} AS d
                    ON t.document_id = d.id AND t.generation = d.generation
                """,
            ).result_rows[0][0]
        return stats


# -- Connection checks --

DOCKER_HINT = (
    '[green]Solution:[/] [cyan]docker run -d --name clickhouse -p 8123:8123 '
    '--ulimit nofile=262144:262144 clickhouse/clickhouse-server:25.12-alpine[/]'
)


def check_clickhouse_connection(
    config: DatabaseConfig,
    console: Console | None = None,
    require_tables: bool = True,
) -> bool:
    """
    Check ClickHouse connection with multi-step validation.

    Steps:
        1. Network - is the server reachable?
        2. Authentication - are credentials valid?
        3. Tables - do the graph tables exist?
    """
    console = console or Console()

    if not _check_network(config.host, config.port, console):
        raise typer.Exit(1)

    if not _check_auth(config, console):
        raise typer.Exit(1)

    if require_tables and not _check_tables(config, console):
        raise typer.Exit(1)

    return True


def _check_network(host: str, port: int, console: Console) -> bool:
    try:
        with socket.create_connection((host, port), timeout=5):
            return True
    except TimeoutError:
        console.print(
            f'[bold red]Error:[/] Connection to [cyan]{host}:{port}[/] timed out.\n\n{DOCKER_HINT}',
        )
    except OSError as e:
        console.print(
            f'[bold red]Error:[/] Cannot reach [cyan]{host}:{port}[/]\n'
            f'[dim]{e}[/dim]\n\n{DOCKER_HINT}',
        )
    return False


def _check_auth(config: DatabaseConfig, console: Console) -> bool:
    try:
        client = clickhouse_connect.get_client(
            host=config.host, port=config.port, username=config.user,
            password=config.password, database='default',
        )
        client.query('SELECT 1')
        return True
    except Exception as e:
        err = str(e).lower()
        if any(x in err for x in ['authentication', 'password', 'denied', 'incorrect']):
            console.print(
                f'[bold red]Error:[/] Authentication failed for [cyan]{config.user}[/]\n\n'
                '[green]Solution:[/] set [cyan]CLICKHOUSE_USER[/] and [cyan]CLICKHOUSE_PASSWORD[/]',
            )
        else:
            console.print(f'[bold red]Error:[/] Auth failed: [dim]{e}[/dim]')
        return False


def _check_tables(config: DatabaseConfig, console: Console) -> bool:
    try:
        client = clickhouse_connect.get_client(**config.get_connection_params())
        existing = {row[0] for row in client.query('SHOW TABLES').result_rows}
    except Exception as e:
        err = str(e).lower()
        if 'unknown database' in err:
            console.print(
                f'[bold red]Error:[/] Database [cyan]{config.database}[/] does not exist.\n\n'
                '[green]Solution:[/] [cyan]vexgraph db init[/]',
            )
        else:
            console.print(f'[bold red]Error:[/] Cannot check tables: [dim]{e}[/dim]')
        return False

    if missing := set(CLICKHOUSE_TABLES) - existing:
        console.print(
            f'[bold red]Error:[/] Missing tables: [cyan]{", ".join(sorted(missing))}[/]\n\n'
            '[green]Solution:[/] [cyan]vexgraph db init[/]',
        )
        return False
    return True
