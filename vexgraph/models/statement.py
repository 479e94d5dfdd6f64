"""Graph records: vulnerabilities, statements, edges and ingestion reports."""
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum

from vexgraph.models.identity import PackageIdentity
from vexgraph.models.version import VersionRange


class Status(str, Enum):
    AFFECTED = 'affected'
    FIXED = 'fixed'
    NOT_AFFECTED = 'not_affected'
    UNDER_INVESTIGATION = 'under_investigation'

    def __str__(self) -> str:
        return self.value

    @property
    def precedence(self) -> int:
        """Higher wins when sources disagree about the same pair."""
        return STATUS_PRECEDENCE[self]


STATUS_PRECEDENCE = {
    Status.FIXED: 3,
    Status.NOT_AFFECTED: 2,
    Status.AFFECTED: 1,
    Status.UNDER_INVESTIGATION: 0,
}


class DocumentType(str, Enum):
    CSAF = 'csaf'
    SPDX = 'spdx'
    CVE = 'cve'

    def __str__(self) -> str:
        return self.value


class EdgeKind(str, Enum):
    """Directed package relations, read as "source <kind> target"."""
    CONTAINS = 'contains'
    DEPENDS_ON = 'depends_on'
    DEV_DEPENDS_ON = 'dev_depends_on'
    BUILD_DEPENDS_ON = 'build_depends_on'
    OPTIONAL_DEPENDS_ON = 'optional_depends_on'
    PROVIDED_DEPENDS_ON = 'provided_depends_on'
    RUNTIME_DEPENDS_ON = 'runtime_depends_on'
    TEST_DEPENDS_ON = 'test_depends_on'
    DESCRIBES = 'describes'
    EXAMPLE_OF = 'example_of'
    GENERATED_FROM = 'generated_from'
    ANCESTOR_OF = 'ancestor_of'
    VARIANT_OF = 'variant_of'
    BUILD_TOOL_OF = 'build_tool_of'
    DEV_TOOL_OF = 'dev_tool_of'
    COMPONENT_OF = 'component_of'

    def __str__(self) -> str:
        return self.value


def normalize_vulnerability_id(raw: str) -> str:
    return raw.strip().upper()


@dataclass(frozen=True)
class Vulnerability:
    """A vulnerability known by its external id.

    Equality and hashing only consider the id; metadata is merged on upsert.
    """
    id: str
    title: str | None = field(default=None, compare=False)
    severity: str | None = field(default=None, compare=False)
    published: datetime | None = field(default=None, compare=False)
    modified: datetime | None = field(default=None, compare=False)
    withdrawn: datetime | None = field(default=None, compare=False)
    cwe: str | None = field(default=None, compare=False)
    # language tag -> text
    descriptions: dict[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'id', normalize_vulnerability_id(self.id))

    def merged(self, stored: 'Vulnerability') -> 'Vulnerability':
        """This vulnerability's metadata over ``stored``; absent values keep the stored ones."""
        return Vulnerability(
            self.id,
            title=self.title or stored.title,
            severity=self.severity or stored.severity,
            published=self.published or stored.published,
            modified=self.modified or stored.modified,
            withdrawn=self.withdrawn or stored.withdrawn,
            cwe=self.cwe or stored.cwe,
            descriptions={**stored.descriptions, **self.descriptions},
        )

    def metadata(self) -> tuple:
        return (
            self.title, self.severity, self.published, self.modified,
            self.withdrawn, self.cwe, tuple(sorted(self.descriptions.items())),
        )


@dataclass(frozen=True)
class Provenance:
    document_id: str
    document_type: DocumentType
    ingested_at: datetime


@dataclass(frozen=True)
class Statement:
    """One claim: a package version range has a status for a vulnerability."""
    package: PackageIdentity
    range: VersionRange
    vulnerability_id: str
    status: Status
    provenance: Provenance | None = None
    justification: str | None = None

    def __post_init__(self):
        object.__setattr__(
            self, 'vulnerability_id', normalize_vulnerability_id(self.vulnerability_id),
        )
        object.__setattr__(self, 'package', self.package.without_version())

    @property
    def key(self) -> tuple[str, str, str]:
        """Natural key within one document."""
        return (self.package.canonical(), str(self.range), self.vulnerability_id)


@dataclass(frozen=True)
class Edge:
    """A directed relation between two packages.

    ``source`` is None for edges anchored at the document itself.
    """
    kind: EdgeKind
    source: PackageIdentity | None
    target: PackageIdentity

    @property
    def key(self) -> tuple[str, str, str]:
        return (
            self.kind.value,
            self.source.canonical() if self.source is not None else '',
            self.target.canonical(),
        )


@dataclass(frozen=True)
class SbomPackage:
    """A package listed by an SBOM document."""
    identity: PackageIdentity
    element_id: str = ''
    confidence: str = 'high'


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    type: DocumentType
    ingested_at: datetime
    name: str = ''
    digest: str = ''


@dataclass
class IngestFailure:
    """A per-item failure; the surrounding document is still ingested."""
    item: str
    kind: str
    reason: str


@dataclass
class IngestionReport:
    document_id: str
    document_type: DocumentType
    statements: int = 0
    edges: int = 0
    packages: int = 0
    vulnerabilities: int = 0
    changed: bool = True
    failures: list[IngestFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.statements + self.edges + self.packages > 0


@dataclass
class ResolvedStatus:
    """The authoritative status of one (package, vulnerability) pair."""
    vulnerability: Vulnerability
    status: Status
    statement: Statement
    statements: list[Statement] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    @property
    def indeterminate(self) -> bool:
        return bool(self.diagnostics)
