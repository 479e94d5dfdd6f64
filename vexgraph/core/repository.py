"""Graph persistence: the backend-neutral contract and the SQL backend.

Writes go through a ``GraphWriter`` obtained from ``GraphRepository.transaction()``;
everything done with one writer commits or rolls back together. Reads are
plain repository methods and never observe a partially replaced document.
"""
import threading
from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone

import structlog
from sqlalchemy import create_engine
from sqlalchemy import delete
from sqlalchemy import event
from sqlalchemy import func
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects import sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from vexgraph.core.config import SqlConfig
from vexgraph.core.errors import TransactionError
from vexgraph.core.schema import advisory_vulnerabilities
from vexgraph.core.schema import documents
from vexgraph.core.schema import DOCUMENT_TABLES
from vexgraph.core.schema import edges as edges_table
from vexgraph.core.schema import metadata
from vexgraph.core.schema import packages
from vexgraph.core.schema import sbom_packages as sbom_packages_table
from vexgraph.core.schema import statements as statements_table
from vexgraph.core.schema import vulnerabilities
from vexgraph.core.schema import vulnerability_descriptions
from vexgraph.models.identity import ANY
from vexgraph.models.identity import Cpe
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.identity import parse_identity
from vexgraph.models.identity import Purl
from vexgraph.models.statement import DocumentRecord
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import Edge
from vexgraph.models.statement import normalize_vulnerability_id
from vexgraph.models.statement import Provenance
from vexgraph.models.statement import SbomPackage
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Status
from vexgraph.models.statement import Vulnerability
from vexgraph.models.version import RangeKind
from vexgraph.models.version import VersionRange
from vexgraph.models.version import VersionScheme

logger = structlog.get_logger('repository')

# Keeps IN (...) lists well below SQLite's bound parameter limit.
CHUNK_SIZE = 500

# Vulnerability columns merged on upsert; absent new values keep the stored ones.
VULNERABILITY_METADATA = ('title', 'severity', 'published', 'modified', 'withdrawn', 'cwe')


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _chunks(items: Sequence, size: int = CHUNK_SIZE) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def package_row(identity: PackageIdentity) -> dict:
    """Column values describing a package identity."""
    if isinstance(identity, Cpe):
        return {
            'id': identity.identity_id(),
            'key': identity.canonical(),
            'scheme': identity.scheme,
            'type': identity.part,
            'namespace': identity.vendor,
            'name': identity.product,
            'version': identity.version,
        }
    return {
        'id': identity.identity_id(),
        'key': identity.canonical(),
        'scheme': identity.scheme,
        'type': identity.type,
        'namespace': identity.namespace,
        'name': identity.name,
        'version': identity.version,
    }


def candidate_keys(identity: PackageIdentity) -> list[str]:
    """Stored PURL keys whose statements may apply to ``identity``.

    A stored key without qualifiers or subpath also covers a qualified query.
    """
    query = identity.without_version()
    keys = [query.canonical()]
    if isinstance(query, Purl):
        bare = query.without_qualifiers().canonical()
        if bare not in keys:
            keys.append(bare)
    return keys


def range_columns(version_range: VersionRange) -> dict:
    """Column values storing a version range without loss."""
    return {
        'version_range': str(version_range),
        'scheme': version_range.scheme.value,
        'range_kind': version_range.kind.value,
        'range_version': version_range.version,
        'range_lower': version_range.lower,
        'range_upper': version_range.upper,
        'lower_inclusive': version_range.lower_inclusive,
        'upper_inclusive': version_range.upper_inclusive,
    }


# Statement columns read back by both backends, in this order.
STATEMENT_COLUMNS = (
    'range_kind', 'range_version', 'range_lower', 'range_upper',
    'lower_inclusive', 'upper_inclusive', 'scheme', 'status', 'justification',
    'vulnerability_id',
)


def statement_from_row(
    range_kind: str,
    range_version: str | None,
    range_lower: str | None,
    range_upper: str | None,
    lower_inclusive: bool,
    upper_inclusive: bool,
    scheme: str,
    status: str,
    justification: str | None,
    vulnerability_id: str,
    package_key: str,
    document_id: str,
    document_type: str,
    ingested_at: datetime,
) -> Statement:
    version_range = VersionRange(
        RangeKind(range_kind),
        VersionScheme(scheme),
        version=range_version,
        lower=range_lower,
        upper=range_upper,
        lower_inclusive=bool(lower_inclusive),
        upper_inclusive=bool(upper_inclusive),
    )
    return Statement(
        package=parse_identity(package_key),
        range=version_range,
        vulnerability_id=vulnerability_id,
        status=Status(status),
        provenance=Provenance(document_id, DocumentType(document_type), _aware(ingested_at)),
        justification=justification,
    )


def statements_from_rows(rows: Iterable[Sequence]) -> list[Statement]:
    """Decode statement rows; a row that cannot be decoded is logged and skipped."""
    decoded = []
    for row in rows:
        try:
            decoded.append(statement_from_row(*row))
        except ValueError as e:
            logger.warning(
                'Undecodable statement skipped',
                document_id=row[11], package=row[10], vulnerability_id=row[9], error=str(e),
            )
    return decoded


class GraphWriter(ABC):
    """Write operations bound to one open transaction."""

    @abstractmethod
    def upsert_package(self, identity: PackageIdentity) -> str:
        """Insert the package if its canonical key is new; return its id."""

    @abstractmethod
    def upsert_vulnerability(self, vulnerability: Vulnerability) -> str:
        """Insert or merge vulnerability metadata; return its id."""

    @abstractmethod
    def get_document(self, document_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    def replace_statements_for_document(
        self,
        document: DocumentRecord,
        statements: Sequence[Statement],
        edges: Sequence[Edge] = (),
        sbom_packages: Sequence[SbomPackage] = (),
        vulnerability_ids: Sequence[str] = (),
    ) -> bool:
        """Replace everything a document contributed.

        Returns False without writing when the stored digest equals
        ``document.digest``.
        """


class GraphRepository(ABC):
    """Backend-neutral graph store."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def document_lock(self, document_id: str) -> threading.Lock:
        """The in-process lock serializing replacement of one document."""
        with self._locks_guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = self._locks[document_id] = threading.Lock()
            return lock

    @abstractmethod
    def ensure_schema(self) -> None:
        """Idempotent schema creation."""

    @abstractmethod
    def reset_schema(self) -> None:
        """Drop and recreate schema (Destructive)."""

    @abstractmethod
    def transaction(self) -> Iterator[GraphWriter]:
        """Context manager yielding a writer; commits on clean exit."""

    # -- Convenience writes, each in its own transaction --

    def upsert_package(self, identity: PackageIdentity) -> str:
        with self.transaction() as tx:
            return tx.upsert_package(identity)

    def upsert_vulnerability(self, vulnerability: Vulnerability) -> str:
        with self.transaction() as tx:
            return tx.upsert_vulnerability(vulnerability)

    def replace_statements_for_document(
        self,
        document: DocumentRecord,
        statements: Sequence[Statement],
        edges: Sequence[Edge] = (),
        sbom_packages: Sequence[SbomPackage] = (),
        vulnerability_ids: Sequence[str] = (),
    ) -> bool:
        with self.document_lock(document.id), self.transaction() as tx:
            return tx.replace_statements_for_document(
                document, statements, edges, sbom_packages, vulnerability_ids,
            )

    # -- Queries --

    def query_statements(self, package_key: str, vulnerability_id: str | None = None) -> list[Statement]:
        """Statements stored for exactly this versionless package key."""
        vulnerability_ids = [normalize_vulnerability_id(vulnerability_id)] if vulnerability_id else None
        return self._query_statements([package_key], vulnerability_ids)

    def query_candidate_statements(
        self,
        identity: PackageIdentity,
        vulnerability_ids: Iterable[str] | None = None,
    ) -> list[Statement]:
        """Statements whose package may cover ``identity``, before version matching."""
        if isinstance(identity, Cpe):
            query = identity.without_version()
            keys = [
                key for key in self._find_cpe_keys(query.part, query.vendor, query.product)
                if Cpe.parse(key).matches(query)
            ]
        else:
            keys = candidate_keys(identity)
        if not keys:
            return []
        ids = None
        if vulnerability_ids is not None:
            ids = sorted({normalize_vulnerability_id(v) for v in vulnerability_ids})
        return self._query_statements(keys, ids)

    @abstractmethod
    def _query_statements(self, package_keys: list[str], vulnerability_ids: list[str] | None) -> list[Statement]:
        ...

    @abstractmethod
    def _find_cpe_keys(self, part: str, vendor: str, product: str) -> list[str]:
        """Stored CPE keys whose part, vendor and product are the given value or ANY."""

    @abstractmethod
    def get_document(self, document_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    def get_vulnerability(self, vulnerability_id: str) -> Vulnerability | None:
        ...

    @abstractmethod
    def get_sbom_packages(self, document_id: str) -> list[SbomPackage]:
        ...

    @abstractmethod
    def get_stats(self) -> dict[str, int]:
        """Row counts per table."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# -- SQL backend --


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


INSERTS = {
    'sqlite': sqlite.insert,
    'postgresql': postgresql.insert,
}


class SqlGraphWriter(GraphWriter):
    def __init__(self, connection: Connection, insert):
        self.connection = connection
        self._insert = insert

    def upsert_package(self, identity: PackageIdentity) -> str:
        row = package_row(identity)
        stmt = self._insert(packages).values(**row, created_at=_now())
        self.connection.execute(stmt.on_conflict_do_nothing(index_elements=['id']))
        return row['id']

    def upsert_vulnerability(self, vulnerability: Vulnerability) -> str:
        stmt = self._insert(vulnerabilities).values(
            id=vulnerability.id,
            title=vulnerability.title or None,
            severity=vulnerability.severity or None,
            published=vulnerability.published,
            modified=vulnerability.modified,
            withdrawn=vulnerability.withdrawn,
            cwe=vulnerability.cwe or None,
            updated_at=_now(),
        )
        merged = {
            name: func.coalesce(stmt.excluded[name], vulnerabilities.c[name])
            for name in VULNERABILITY_METADATA
        }
        stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={**merged, 'updated_at': stmt.excluded.updated_at},
            where=or_(
                *(value.is_distinct_from(vulnerabilities.c[name]) for name, value in merged.items()),
            ),
        )
        self.connection.execute(stmt)

        for lang, text in sorted(vulnerability.descriptions.items()):
            stmt = self._insert(vulnerability_descriptions).values(
                vulnerability_id=vulnerability.id, lang=lang, text=text,
            )
            self.connection.execute(
                stmt.on_conflict_do_update(
                    index_elements=['vulnerability_id', 'lang'],
                    set_={'text': stmt.excluded.text},
                    where=vulnerability_descriptions.c.text != stmt.excluded.text,
                ),
            )
        return vulnerability.id

    def get_document(self, document_id: str) -> DocumentRecord | None:
        return _select_document(self.connection, document_id)

    def _missing(self, column, ids: set[str]) -> set[str]:
        found: set[str] = set()
        ordered = sorted(ids)
        for chunk in _chunks(ordered):
            rows = self.connection.execute(select(column).where(column.in_(chunk)))
            found.update(row[0] for row in rows)
        return ids - found

    def _check_references(
        self,
        package_ids: set[str],
        vulnerability_ids: set[str],
        document_id: str,
    ) -> None:
        missing_packages = self._missing(packages.c.id, package_ids)
        missing_vulnerabilities = self._missing(vulnerabilities.c.id, vulnerability_ids)
        if missing_packages or missing_vulnerabilities:
            raise TransactionError(
                f"Document {document_id!r} references unknown rows: "
                f"{len(missing_packages)} package(s), "
                f"{len(missing_vulnerabilities)} vulnerability(ies) "
                f"{sorted(missing_vulnerabilities)[:5]}",
            )

    def replace_statements_for_document(
        self,
        document: DocumentRecord,
        statements: Sequence[Statement],
        edges: Sequence[Edge] = (),
        sbom_packages: Sequence[SbomPackage] = (),
        vulnerability_ids: Sequence[str] = (),
    ) -> bool:
        existing = self.get_document(document.id)
        if existing is not None and document.digest and existing.digest == document.digest:
            logger.info('Document unchanged', document_id=document.id)
            return False

        advisory_ids = sorted({normalize_vulnerability_id(v) for v in vulnerability_ids})
        package_ids = {s.package.identity_id() for s in statements}
        package_ids.update(e.target.identity_id() for e in edges)
        package_ids.update(e.source.identity_id() for e in edges if e.source is not None)
        package_ids.update(p.identity.identity_id() for p in sbom_packages)
        self._check_references(
            package_ids,
            {s.vulnerability_id for s in statements} | set(advisory_ids),
            document.id,
        )

        for table in DOCUMENT_TABLES:
            self.connection.execute(delete(table).where(table.c.document_id == document.id))

        document_values = {
            'type': document.type.value,
            'name': document.name or '',
            'digest': document.digest,
            'ingested_at': document.ingested_at,
        }
        stmt = self._insert(documents).values(id=document.id, **document_values)
        self.connection.execute(
            stmt.on_conflict_do_update(index_elements=['id'], set_=document_values),
        )

        if statements:
            self.connection.execute(
                statements_table.insert(),
                [
                    {
                        'document_id': document.id,
                        'package_id': s.package.identity_id(),
                        'vulnerability_id': s.vulnerability_id,
                        **range_columns(s.range),
                        'status': s.status.value,
                        'justification': s.justification,
                    }
                    for s in statements
                ],
            )
        if edges:
            self.connection.execute(
                edges_table.insert(),
                [
                    {
                        'document_id': document.id,
                        'kind': e.kind.value,
                        'source_id': e.source.identity_id() if e.source is not None else None,
                        'target_id': e.target.identity_id(),
                    }
                    for e in edges
                ],
            )
        if sbom_packages:
            memberships = {
                (p.identity.identity_id(), p.element_id): p.confidence for p in sbom_packages
            }
            self.connection.execute(
                sbom_packages_table.insert(),
                [
                    {
                        'document_id': document.id,
                        'package_id': package_id,
                        'element_id': element_id,
                        'confidence': confidence,
                    }
                    for (package_id, element_id), confidence in memberships.items()
                ],
            )
        if advisory_ids:
            self.connection.execute(
                advisory_vulnerabilities.insert(),
                [{'document_id': document.id, 'vulnerability_id': v} for v in advisory_ids],
            )

        logger.debug(
            'Document replaced', document_id=document.id,
            statements=len(statements), edges=len(edges),
            packages=len(sbom_packages),
        )
        return True


def _select_document(connection: Connection, document_id: str) -> DocumentRecord | None:
    row = connection.execute(
        select(
            documents.c.id, documents.c.type, documents.c.ingested_at,
            documents.c.name, documents.c.digest,
        ).where(documents.c.id == document_id),
    ).first()
    if row is None:
        return None
    return DocumentRecord(
        id=row.id,
        type=DocumentType(row.type),
        ingested_at=_aware(row.ingested_at),
        name=row.name,
        digest=row.digest,
    )


class SqlGraphRepository(GraphRepository):
    """Graph store on SQLAlchemy Core (SQLite or PostgreSQL)."""

    def __init__(self, config: SqlConfig, engine: Engine | None = None):
        super().__init__()
        self.config = config
        self.engine = engine or create_engine(config.url, echo=config.echo)
        dialect = self.engine.dialect.name
        if dialect not in INSERTS:
            raise ValueError(f"Unsupported SQL dialect {dialect!r}; use sqlite or postgresql")
        self._insert = INSERTS[dialect]
        if dialect == 'sqlite':
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)

    def ensure_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise TransactionError(f"Schema creation failed: {e}") from e

    def reset_schema(self) -> None:
        metadata.drop_all(self.engine)
        self.ensure_schema()

    @contextmanager
    def transaction(self) -> Iterator[SqlGraphWriter]:
        try:
            with self.engine.begin() as connection:
                yield SqlGraphWriter(connection, self._insert)
        except SQLAlchemyError as e:
            logger.error('Transaction rolled back', error=str(e))
            raise TransactionError(f"Transaction failed: {e}") from e

    def _query_statements(self, package_keys: list[str], vulnerability_ids: list[str] | None) -> list[Statement]:
        query = (
            select(
                *(statements_table.c[name] for name in STATEMENT_COLUMNS),
                packages.c.key,
                documents.c.id,
                documents.c.type,
                documents.c.ingested_at,
            )
            .select_from(
                statements_table
                .join(packages, statements_table.c.package_id == packages.c.id)
                .join(documents, statements_table.c.document_id == documents.c.id),
            )
            .where(packages.c.key.in_(package_keys))
            .order_by(documents.c.id, statements_table.c.id)
        )
        if vulnerability_ids is not None:
            if not vulnerability_ids:
                return []
            query = query.where(statements_table.c.vulnerability_id.in_(vulnerability_ids))
        with self.engine.connect() as connection:
            return statements_from_rows(connection.execute(query))

    def _find_cpe_keys(self, part: str, vendor: str, product: str) -> list[str]:
        query = select(packages.c.key).where(
            packages.c.scheme == 'cpe',
            packages.c.version == ANY,
            packages.c.type.in_(sorted({part, ANY})),
            packages.c.namespace.in_(sorted({vendor, ANY})),
            packages.c.name.in_(sorted({product, ANY})),
        )
        with self.engine.connect() as connection:
            return [row[0] for row in connection.execute(query)]

    def get_document(self, document_id: str) -> DocumentRecord | None:
        with self.engine.connect() as connection:
            return _select_document(connection, document_id)

    def get_vulnerability(self, vulnerability_id: str) -> Vulnerability | None:
        vulnerability_id = normalize_vulnerability_id(vulnerability_id)
        query = select(
            vulnerabilities.c.id, *(vulnerabilities.c[name] for name in VULNERABILITY_METADATA),
        ).where(vulnerabilities.c.id == vulnerability_id)
        descriptions = select(
            vulnerability_descriptions.c.lang, vulnerability_descriptions.c.text,
        ).where(vulnerability_descriptions.c.vulnerability_id == vulnerability_id)
        with self.engine.connect() as connection:
            row = connection.execute(query).first()
            if row is None:
                return None
            texts = {lang: text for lang, text in connection.execute(descriptions)}
        return Vulnerability(
            row.id,
            title=row.title,
            severity=row.severity,
            published=_aware(row.published) if row.published else None,
            modified=_aware(row.modified) if row.modified else None,
            withdrawn=_aware(row.withdrawn) if row.withdrawn else None,
            cwe=row.cwe,
            descriptions=texts,
        )

    def get_sbom_packages(self, document_id: str) -> list[SbomPackage]:
        query = (
            select(packages.c.key, sbom_packages_table.c.element_id, sbom_packages_table.c.confidence)
            .select_from(sbom_packages_table.join(packages, sbom_packages_table.c.package_id == packages.c.id))
            .where(sbom_packages_table.c.document_id == document_id)
            .order_by(sbom_packages_table.c.element_id, packages.c.key)
        )
        with self.engine.connect() as connection:
            return [
                SbomPackage(parse_identity(key), element_id, confidence)
                for key, element_id, confidence in connection.execute(query)
            ]

    def get_stats(self) -> dict[str, int]:
        tables = (packages, vulnerabilities, vulnerability_descriptions, documents, *DOCUMENT_TABLES)
        with self.engine.connect() as connection:
            return {
                table.name: connection.execute(select(func.count()).select_from(table)).scalar_one()
                for table in tables
            }

    def close(self) -> None:
        self.engine.dispose()
