"""Table definitions for both storage backends."""
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import MetaData
from sqlalchemy import String
from sqlalchemy import Table
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint

metadata = MetaData()

packages = Table(
    'packages', metadata,
    Column('id', String(36), primary_key=True, comment='UUIDv5 of the canonical key'),
    Column('key', Text, nullable=False, unique=True, comment='Canonical PURL or CPE 2.3 string'),
    Column('scheme', String(8), nullable=False),
    Column('type', String(64), nullable=False, comment='PURL type or CPE part'),
    Column('namespace', Text, nullable=True, comment='PURL namespace or CPE vendor'),
    Column('name', Text, nullable=False, comment='PURL name or CPE product'),
    Column('version', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

vulnerabilities = Table(
    'vulnerabilities', metadata,
    Column('id', String(128), primary_key=True, comment='Upper-cased external id'),
    Column('title', Text, nullable=True),
    Column('severity', String(16), nullable=True),
    Column('published', DateTime(timezone=True), nullable=True),
    Column('modified', DateTime(timezone=True), nullable=True),
    Column('withdrawn', DateTime(timezone=True), nullable=True),
    Column('cwe', String(32), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)

vulnerability_descriptions = Table(
    'vulnerability_descriptions', metadata,
    Column('vulnerability_id', String(128), ForeignKey('vulnerabilities.id'), primary_key=True),
    Column('lang', String(35), primary_key=True, comment='Lower-cased language tag'),
    Column('text', Text, nullable=False),
)

documents = Table(
    'documents', metadata,
    Column('id', String(512), primary_key=True, comment='<type>:<natural document id>'),
    Column('type', String(8), nullable=False),
    Column('name', Text, nullable=False, default=''),
    Column('digest', String(64), nullable=False, default=''),
    Column('ingested_at', DateTime(timezone=True), nullable=False),
)

statements = Table(
    'statements', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('document_id', String(512), ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
    Column('package_id', String(36), ForeignKey('packages.id'), nullable=False),
    Column('vulnerability_id', String(128), ForeignKey('vulnerabilities.id'), nullable=False),
    Column('version_range', Text, nullable=False, comment='vers URI, for display and uniqueness'),
    Column('scheme', String(16), nullable=False),
    Column('range_kind', String(24), nullable=False),
    Column('range_version', Text, nullable=True),
    Column('range_lower', Text, nullable=True),
    Column('range_upper', Text, nullable=True),
    Column('lower_inclusive', Boolean, nullable=False, default=True),
    Column('upper_inclusive', Boolean, nullable=False, default=False),
    Column('status', String(32), nullable=False),
    Column('justification', Text, nullable=True),
    UniqueConstraint('document_id', 'package_id', 'version_range', 'vulnerability_id'),
    Index('ix_statements_package', 'package_id'),
    Index('ix_statements_vulnerability', 'vulnerability_id'),
)

edges = Table(
    'edges', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('document_id', String(512), ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
    Column('kind', String(32), nullable=False),
    Column('source_id', String(36), ForeignKey('packages.id'), nullable=True),
    Column('target_id', String(36), ForeignKey('packages.id'), nullable=False),
    Index('ix_edges_document', 'document_id'),
)

sbom_packages = Table(
    'sbom_packages', metadata,
    Column('document_id', String(512), ForeignKey('documents.id', ondelete='CASCADE'), primary_key=True),
    Column('package_id', String(36), ForeignKey('packages.id'), primary_key=True),
    Column('element_id', String(256), primary_key=True, default=''),
    Column('confidence', String(8), nullable=False, default='high'),
)

advisory_vulnerabilities = Table(
    'advisory_vulnerabilities', metadata,
    Column('document_id', String(512), ForeignKey('documents.id', ondelete='CASCADE'), primary_key=True),
    Column('vulnerability_id', String(128), ForeignKey('vulnerabilities.id'), primary_key=True),
)

# Document-scoped tables, in deletion order.
DOCUMENT_TABLES = (statements, edges, sbom_packages, advisory_vulnerabilities)


# -- ClickHouse --
# Document-scoped rows carry the generation of the replacement that wrote
# them; only rows matching documents.generation are visible to readers.

CLICKHOUSE_PACKAGES_DDL = """
CREATE TABLE IF NOT EXISTS packages (
    id String COMMENT 'UUIDv5 of the canonical key',
    key String COMMENT 'Canonical PURL or CPE 2.3 string',
    scheme LowCardinality(String),
    type LowCardinality(String) COMMENT 'PURL type or CPE part',
    namespace String DEFAULT '' COMMENT 'PURL namespace or CPE vendor',
    name String COMMENT 'PURL name or CPE product',
    version Nullable(String),
    created_at DateTime DEFAULT now()
) ENGINE = ReplacingMergeTree
ORDER BY (id)
""".strip()

CLICKHOUSE_VULNERABILITIES_DDL = """
CREATE TABLE IF NOT EXISTS vulnerabilities (
    id String COMMENT 'Upper-cased external id',
    title Nullable(String),
    severity Nullable(String),
    published Nullable(DateTime64(3)),
    modified Nullable(DateTime64(3)),
    withdrawn Nullable(DateTime64(3)),
    cwe Nullable(String),
    descriptions Map(String, String) COMMENT 'Language tag to text',
    updated_at DateTime64(3) DEFAULT now64(3)
) ENGINE = ReplacingMergeTree(updated_at)
ORDER BY (id)
""".strip()

CLICKHOUSE_DOCUMENTS_DDL = """
CREATE TABLE IF NOT EXISTS documents (
    id String COMMENT '<type>:<natural document id>',
    type LowCardinality(String),
    name String DEFAULT '',
    digest String DEFAULT '',
    generation UInt64 COMMENT 'Generation currently visible to readers',
    ingested_at DateTime64(3)
) ENGINE = ReplacingMergeTree(generation)
ORDER BY (id)
""".strip()

CLICKHOUSE_STATEMENTS_DDL = """
CREATE TABLE IF NOT EXISTS statements (
    document_id String,
    generation UInt64,
    package_id String,
    package_key String,
    vulnerability_id String,
    version_range String COMMENT 'vers URI, for display',
    scheme LowCardinality(String),
    range_kind LowCardinality(String),
    range_version Nullable(String),
    range_lower Nullable(String),
    range_upper Nullable(String),
    lower_inclusive Bool,
    upper_inclusive Bool,
    status LowCardinality(String),
    justification Nullable(String)
) ENGINE = MergeTree
ORDER BY (package_key, vulnerability_id, document_id, generation)
""".strip()

CLICKHOUSE_EDGES_DDL = """
CREATE TABLE IF NOT EXISTS edges (
    document_id String,
    generation UInt64,
    kind LowCardinality(String),
    source_key String DEFAULT '' COMMENT 'Empty for the document root',
    target_key String
) ENGINE = MergeTree
ORDER BY (document_id, generation)
""".strip()

CLICKHOUSE_SBOM_PACKAGES_DDL = """
CREATE TABLE IF NOT EXISTS sbom_packages (
    document_id String,
    generation UInt64,
    package_key String,
    element_id String DEFAULT '',
    confidence LowCardinality(String) DEFAULT 'high'
) ENGINE = MergeTree
ORDER BY (document_id, generation)
""".strip()

CLICKHOUSE_ADVISORY_VULNERABILITIES_DDL = """
CREATE TABLE IF NOT EXISTS advisory_vulnerabilities (
    document_id String,
    generation UInt64,
    vulnerability_id String
) ENGINE = MergeTree
ORDER BY (document_id, generation)
""".strip()

CLICKHOUSE_DDL = (
    CLICKHOUSE_PACKAGES_DDL,
    CLICKHOUSE_VULNERABILITIES_DDL,
    CLICKHOUSE_DOCUMENTS_DDL,
    CLICKHOUSE_STATEMENTS_DDL,
    CLICKHOUSE_EDGES_DDL,
    CLICKHOUSE_SBOM_PACKAGES_DDL,
    CLICKHOUSE_ADVISORY_VULNERABILITIES_DDL,
)

CLICKHOUSE_DOCUMENT_TABLES = ('statements', 'edges', 'sbom_packages', 'advisory_vulnerabilities')
CLICKHOUSE_TABLES = (
    'packages', 'vulnerabilities', 'documents', *CLICKHOUSE_DOCUMENT_TABLES,
)
