"""Normalization of parsed CSAF, CVE and SPDX documents into graph records.

Every normalizer collects per-item failures instead of raising, so one bad
product or package never aborts the rest of the document.
"""
import hashlib
import json
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timezone

import structlog

from vexgraph.core.errors import EmptyDocumentError
from vexgraph.core.errors import ParseError
from vexgraph.models.csaf import CsafDocument
from vexgraph.models.csaf import FullProductName
from vexgraph.models.csaf import Score
from vexgraph.models.cve import AffectedProduct
from vexgraph.models.cve import AffectedVersion
from vexgraph.models.cve import CveRecord
from vexgraph.models.identity import ANY
from vexgraph.models.identity import Cpe
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.identity import parse_identity
from vexgraph.models.identity import Purl
from vexgraph.models.spdx import SpdxDocument
from vexgraph.models.spdx import SpdxPackage
from vexgraph.models.statement import DocumentRecord
from vexgraph.models.statement import DocumentType
from vexgraph.models.statement import Edge
from vexgraph.models.statement import EdgeKind
from vexgraph.models.statement import IngestFailure
from vexgraph.models.statement import Provenance
from vexgraph.models.statement import SbomPackage
from vexgraph.models.statement import Statement
from vexgraph.models.statement import Status
from vexgraph.models.statement import Vulnerability
from vexgraph.models.version import checked_range
from vexgraph.models.version import parse_range
from vexgraph.models.version import scheme_for
from vexgraph.models.version import VERS_SCHEMES
from vexgraph.models.version import VersionRange

logger = structlog.get_logger('normalizer_service')

CSAF_STATUS_FIELDS = (
    ('first_affected', Status.AFFECTED),
    ('known_affected', Status.AFFECTED),
    ('last_affected', Status.AFFECTED),
    ('fixed', Status.FIXED),
    ('first_fixed', Status.FIXED),
    ('known_not_affected', Status.NOT_AFFECTED),
    ('under_investigation', Status.UNDER_INVESTIGATION),
)

CVE_STATUSES = {
    'affected': Status.AFFECTED,
    'unaffected': Status.NOT_AFFECTED,
    'unknown': Status.UNDER_INVESTIGATION,
}

# relationshipType -> (edge kind, whether the SPDX direction is reversed)
SPDX_RELATIONSHIPS = {
    'CONTAINS': (EdgeKind.CONTAINS, False),
    'CONTAINED_BY': (EdgeKind.CONTAINS, True),
    'DESCRIBES': (EdgeKind.DESCRIBES, False),
    'DESCRIBED_BY': (EdgeKind.DESCRIBES, True),
    'DEPENDS_ON': (EdgeKind.DEPENDS_ON, False),
    'DEPENDENCY_OF': (EdgeKind.DEPENDS_ON, True),
    'DEV_DEPENDENCY_OF': (EdgeKind.DEV_DEPENDS_ON, True),
    'BUILD_DEPENDENCY_OF': (EdgeKind.BUILD_DEPENDS_ON, True),
    'OPTIONAL_DEPENDENCY_OF': (EdgeKind.OPTIONAL_DEPENDS_ON, True),
    'PROVIDED_DEPENDENCY_OF': (EdgeKind.PROVIDED_DEPENDS_ON, True),
    'RUNTIME_DEPENDENCY_OF': (EdgeKind.RUNTIME_DEPENDS_ON, True),
    'TEST_DEPENDENCY_OF': (EdgeKind.TEST_DEPENDS_ON, True),
    'EXAMPLE_OF': (EdgeKind.EXAMPLE_OF, False),
    'GENERATED_FROM': (EdgeKind.GENERATED_FROM, False),
    'GENERATES': (EdgeKind.GENERATED_FROM, True),
    'ANCESTOR_OF': (EdgeKind.ANCESTOR_OF, False),
    'DESCENDANT_OF': (EdgeKind.ANCESTOR_OF, True),
    'VARIANT_OF': (EdgeKind.VARIANT_OF, False),
    'BUILD_TOOL_OF': (EdgeKind.BUILD_TOOL_OF, False),
    'DEV_TOOL_OF': (EdgeKind.DEV_TOOL_OF, False),
}

SEVERITY_ORDER = ['NONE', 'LOW', 'MEDIUM', 'HIGH', 'CRITICAL']


@dataclass
class NormalizedAdvisory:
    document: DocumentRecord
    statements: list[Statement] = field(default_factory=list)
    vulnerabilities: list[Vulnerability] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    failures: list[IngestFailure] = field(default_factory=list)

    def digest(self) -> str:
        return _digest(
            [['s', *s.key, s.status.value, s.justification or ''] for s in self.statements]
            + [['v', v.id, json.dumps(v.metadata(), default=str)] for v in self.vulnerabilities]
            + [['e', *e.key] for e in self.edges],
        )


@dataclass
class NormalizedSbom:
    document: DocumentRecord
    packages: list[SbomPackage] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    failures: list[IngestFailure] = field(default_factory=list)

    @property
    def entries(self) -> list[tuple[PackageIdentity, Edge]]:
        """Each SBOM package with its sbom-contains-package edge."""
        return [
            (p.identity, Edge(EdgeKind.CONTAINS, None, p.identity))
            for p in self.packages
        ]

    def digest(self) -> str:
        return _digest(
            [['p', p.identity.canonical(), p.element_id, p.confidence] for p in self.packages]
            + [['e', *e.key] for e in self.edges],
        )


def _digest(rows: list[list[str]]) -> str:
    payload = json.dumps(sorted(rows), separators=(',', ':'))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    """Dates without an offset are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _descriptions(pairs) -> dict[str, str]:
    """First non-empty text per lower-cased language tag."""
    found: dict[str, str] = {}
    for lang, text in pairs:
        if text and text.strip():
            found.setdefault((lang or 'en').lower(), text.strip())
    return found


def _failure(item: str, error: Exception) -> IngestFailure:
    logger.warning('Item skipped', item=item, kind=type(error).__name__, reason=str(error))
    return IngestFailure(item=item, kind=type(error).__name__, reason=str(error))


# -- CSAF --


@dataclass(frozen=True)
class _BranchContext:
    vendor: str | None = None
    product_name: str | None = None
    version: str | None = None
    version_range: str | None = None


class _ProductResolver:
    """Maps CSAF product ids to (versionless identity, version range)."""

    def __init__(self, document: CsafDocument):
        self._products: dict[str, tuple[FullProductName, _BranchContext]] = {}
        self._components: dict[str, tuple[str, str]] = {}
        self._cache: dict[str, tuple[PackageIdentity, VersionRange] | ParseError] = {}

        tree = document.product_tree
        self._walk(tree.branches, _BranchContext())
        for product in tree.full_product_names:
            self._products.setdefault(product.product_id, (product, _BranchContext()))
        for relationship in tree.relationships:
            self._components[relationship.full_product_name.product_id] = (
                relationship.product_reference,
                relationship.relates_to_product_reference,
            )

    def _walk(self, branches, context: _BranchContext) -> None:
        for branch in branches:
            if branch.category == 'vendor':
                ctx = replace(context, vendor=branch.name)
            elif branch.category in ('product_name', 'product_family'):
                ctx = replace(context, product_name=branch.name)
            elif branch.category == 'product_version':
                ctx = replace(context, version=branch.name)
            elif branch.category == 'product_version_range':
                ctx = replace(context, version_range=branch.name)
            else:
                ctx = context
            if branch.product is not None:
                self._products[branch.product.product_id] = (branch.product, ctx)
            self._walk(branch.branches, ctx)

    def relationships(self) -> list[tuple[str, str]]:
        return list(self._components.values())

    def identity(self, product_id: str) -> PackageIdentity:
        """The identity a product declares, version included."""
        entry = self._products.get(product_id)
        if entry is None:
            if product_id in self._components:
                return self.identity(self._components[product_id][0])
            raise ParseError(f"Unknown product id {product_id!r}")
        product, _ = entry
        helper = product.product_identification_helper
        if helper is None or not (helper.purl or helper.cpe):
            raise ParseError(f"Product {product_id!r} has no identification helper")
        if helper.purl:
            try:
                return parse_identity(helper.purl, 'purl')
            except ParseError:
                if not helper.cpe:
                    raise
        return parse_identity(helper.cpe, 'cpe')

    def resolve(self, product_id: str, _seen: frozenset = frozenset()) -> tuple[PackageIdentity, VersionRange]:
        cached = self._cache.get(product_id)
        if isinstance(cached, ParseError):
            raise cached
        if cached is not None:
            return cached
        try:
            if product_id not in self._products and product_id in self._components:
                if product_id in _seen:
                    raise ParseError(f"Relationship cycle at product {product_id!r}")
                component = self._components[product_id][0]
                result = self.resolve(component, _seen | {product_id})
            else:
                result = self._resolve_product(product_id)
        except ParseError as e:
            self._cache[product_id] = e
            raise
        self._cache[product_id] = result
        return result

    def _resolve_product(self, product_id: str) -> tuple[PackageIdentity, VersionRange]:
        identity = self.identity(product_id)
        _, context = self._products[product_id]
        scheme = scheme_for(identity)

        if isinstance(identity, Cpe):
            version = identity.concrete_version
        else:
            version = identity.version

        if version:
            version_range = VersionRange.exact(version, scheme)
        elif context.version_range:
            version_range = parse_range(context.version_range, scheme)
        elif context.version:
            version_range = VersionRange.exact(context.version, scheme)
        else:
            version_range = VersionRange.any(scheme)
        return identity.without_version(), checked_range(version_range)


def _csaf_severity(scores: list[Score]) -> str | None:
    found = [
        str(score.cvss_v3.get('baseSeverity', '')).upper()
        for score in scores if score.cvss_v3
    ]
    found = [s for s in found if s in SEVERITY_ORDER]
    if not found:
        return None
    return max(found, key=SEVERITY_ORDER.index)


def normalize_advisory(document: CsafDocument, ingested_at: datetime | None = None) -> NormalizedAdvisory:
    """Turn a CSAF/VEX document into statements, one per product status entry."""
    record = DocumentRecord(
        id=f"{DocumentType.CSAF}:{document.document_id}",
        type=DocumentType.CSAF,
        ingested_at=ingested_at or _now(),
        name=document.document.title,
    )
    provenance = Provenance(record.id, record.type, record.ingested_at)
    result = NormalizedAdvisory(document=record)
    resolver = _ProductResolver(document)

    edges: dict[tuple, Edge] = {}
    for component_id, platform_id in resolver.relationships():
        try:
            edge = Edge(
                EdgeKind.COMPONENT_OF,
                resolver.identity(component_id),
                resolver.identity(platform_id),
            )
        except ParseError as e:
            result.failures.append(_failure(f"relationship:{component_id}->{platform_id}", e))
            continue
        edges.setdefault(edge.key, edge)
    result.edges = list(edges.values())

    statements: dict[tuple, Statement] = {}
    for index, vulnerability in enumerate(document.vulnerabilities):
        vuln_id = vulnerability.cve or (vulnerability.ids[0].text if vulnerability.ids else None)
        if not vuln_id:
            result.failures.append(
                _failure(f"vulnerabilities[{index}]", ParseError('Vulnerability has neither cve nor ids')),
            )
            continue
        result.vulnerabilities.append(
            Vulnerability(
                vuln_id,
                title=vulnerability.title,
                severity=_csaf_severity(vulnerability.scores),
                published=_utc(vulnerability.release_date or vulnerability.discovery_date),
                cwe=vulnerability.cwe.id if vulnerability.cwe else None,
                descriptions=_descriptions(
                    (document.document.lang, note.text)
                    for note in vulnerability.notes if note.category == 'description'
                ),
            ),
        )
        justifications = {
            product_id: flag.label
            for flag in vulnerability.flags
            for product_id in flag.product_ids
        }
        for field_name, status in CSAF_STATUS_FIELDS:
            for product_id in getattr(vulnerability.product_status, field_name):
                try:
                    identity, version_range = resolver.resolve(product_id)
                except ParseError as e:
                    result.failures.append(_failure(f"{vuln_id}:{product_id}", e))
                    continue
                statement = Statement(
                    package=identity,
                    range=version_range,
                    vulnerability_id=vuln_id,
                    status=status,
                    provenance=provenance,
                    justification=justifications.get(product_id) if status == Status.NOT_AFFECTED else None,
                )
                existing = statements.get(statement.key)
                if existing is None or status.precedence > existing.status.precedence:
                    statements[statement.key] = statement
    result.statements = list(statements.values())

    if not result.statements and not result.edges:
        raise EmptyDocumentError(record.id, result.failures)

    logger.debug(
        'Advisory normalized', document_id=record.id,
        statements=len(result.statements), edges=len(result.edges),
        failures=len(result.failures),
    )
    return result


# -- CVE records --

# collectionURL -> PURL type, for affected entries identified by packageName
CVE_COLLECTIONS = {
    'https://pypi.org': 'pypi',
    'https://registry.npmjs.org': 'npm',
    'https://www.npmjs.com': 'npm',
    'https://repo.maven.apache.org/maven2': 'maven',
    'https://repo1.maven.org/maven2': 'maven',
    'https://crates.io': 'cargo',
    'https://rubygems.org': 'gem',
    'https://proxy.golang.org': 'golang',
    'https://pkg.go.dev': 'golang',
    'https://www.nuget.org': 'nuget',
    'https://packagist.org': 'composer',
    'https://hex.pm': 'hex',
    'https://pub.dev': 'pub',
}


def _cve_package(affected: AffectedProduct) -> Purl | None:
    """The PURL of an entry naming a package in a known collection."""
    if not affected.package_name:
        return None
    collection = (affected.collection_url or '').strip().rstrip('/').lower()
    purl_type = CVE_COLLECTIONS.get(collection)
    if purl_type is None:
        return None
    name = affected.package_name.strip()
    if purl_type == 'maven' and ':' in name:
        namespace, _, name = name.partition(':')
    elif '/' in name:
        namespace, _, name = name.rpartition('/')
    else:
        namespace = None
    return Purl.build(purl_type, name, namespace=namespace)


def _cve_identity(affected: AffectedProduct) -> PackageIdentity:
    if affected.cpes:
        return parse_identity(affected.cpes[0], 'cpe')
    package = _cve_package(affected)
    if package is not None:
        return package
    if affected.vendor and affected.product and affected.product.lower() != 'n/a':
        return Cpe.from_vendor_product(affected.vendor, affected.product)
    if affected.package_name:
        return Purl.build('generic', affected.package_name.strip())
    raise ParseError('Affected product has neither cpes, packageName nor vendor/product')


def _cve_range(version: AffectedVersion, identity: PackageIdentity) -> VersionRange:
    scheme = scheme_for(identity)
    declared = VERS_SCHEMES.get((version.version_type or '').lower())
    if declared is not None and declared != scheme:
        logger.debug(
            'versionType disagrees with ecosystem', version_type=version.version_type,
            scheme=str(scheme), identity=identity.canonical(),
        )
    start = version.version.strip()
    lower = None if start in ('', '0', ANY) else start
    if version.less_than is not None:
        upper = None if version.less_than.strip() == ANY else version.less_than
        return VersionRange.between(lower, upper, scheme, upper_inclusive=False)
    if version.less_than_or_equal is not None:
        upper = None if version.less_than_or_equal.strip() == ANY else version.less_than_or_equal
        return VersionRange.between(lower, upper, scheme, upper_inclusive=True)
    if lower is None:
        return VersionRange.any(scheme)
    return VersionRange.exact(start, scheme)


def _cve_severity(record: CveRecord) -> str | None:
    found = []
    for metric in record.containers.cna.metrics:
        for key in ('cvssV4_0', 'cvssV3_1', 'cvssV3_0'):
            severity = (metric.get(key) or {}).get('baseSeverity')
            if severity and str(severity).upper() in SEVERITY_ORDER:
                found.append(str(severity).upper())
    if not found:
        return None
    return max(found, key=SEVERITY_ORDER.index)


def _cve_vulnerability(record: CveRecord) -> Vulnerability:
    metadata = record.metadata
    return Vulnerability(
        record.cve_id,
        title=record.title,
        severity=_cve_severity(record),
        published=_utc(metadata.date_published),
        modified=_utc(metadata.date_updated),
        withdrawn=_utc(metadata.date_rejected),
        cwe=record.cwe,
        descriptions=_descriptions((d.lang, d.value) for d in record.descriptions),
    )


def normalize_cve_record(record: CveRecord, ingested_at: datetime | None = None) -> NormalizedAdvisory:
    """Turn a CVE JSON 5 record into a vulnerability and its version statements.

    Rejected records yield the vulnerability alone; a published record without
    a single usable statement raises EmptyDocumentError.
    """
    document = DocumentRecord(
        id=f"{DocumentType.CVE}:{record.cve_id.upper()}",
        type=DocumentType.CVE,
        ingested_at=ingested_at or _now(),
        name=record.title or '',
    )
    provenance = Provenance(document.id, document.type, document.ingested_at)
    vulnerability = _cve_vulnerability(record)
    result = NormalizedAdvisory(document=document, vulnerabilities=[vulnerability])
    if record.rejected:
        return result

    statements: dict[tuple, Statement] = {}
    for index, affected in enumerate(record.containers.cna.affected):
        try:
            identity = _cve_identity(affected)
        except ParseError as e:
            result.failures.append(_failure(f"affected[{index}]", e))
            continue

        entries: list[tuple[str, AffectedVersion | None, str]] = [
            (f"affected[{index}].versions[{n}]", v, v.status) for n, v in enumerate(affected.versions)
        ]
        if not entries and affected.default_status:
            entries = [(f"affected[{index}]", None, affected.default_status)]

        for item, version, raw_status in entries:
            status = CVE_STATUSES.get(raw_status.lower())
            if status is None:
                result.failures.append(_failure(item, ParseError(f"Unknown status {raw_status!r}")))
                continue
            try:
                version_range = checked_range(
                    _cve_range(version, identity) if version is not None
                    else VersionRange.any(scheme_for(identity)),
                )
            except ParseError as e:
                result.failures.append(_failure(item, e))
                continue
            statement = Statement(identity, version_range, vulnerability.id, status, provenance)
            existing = statements.get(statement.key)
            if existing is None or status.precedence > existing.status.precedence:
                statements[statement.key] = statement
    result.statements = list(statements.values())

    if not result.statements:
        raise EmptyDocumentError(document.id, result.failures)

    logger.debug(
        'CVE record normalized', document_id=document.id,
        statements=len(result.statements), failures=len(result.failures),
    )
    return result


# -- SPDX --


def _spdx_identity(package: SpdxPackage, failures: list[IngestFailure]) -> tuple[PackageIdentity | None, str]:
    refs = sorted(
        (r for r in package.external_refs if r.reference_type in ('purl', 'cpe23Type', 'cpe22Type')),
        key=lambda r: 0 if r.reference_type == 'purl' else 1,
    )
    for ref in refs:
        hint = 'purl' if ref.reference_type == 'purl' else 'cpe'
        try:
            identity = parse_identity(ref.reference_locator, hint)
        except ParseError as e:
            failures.append(_failure(package.spdx_id, e))
            continue
        if package.version_info:
            if isinstance(identity, Purl) and identity.version is None:
                identity = identity.with_version(package.version_info)
            elif isinstance(identity, Cpe) and identity.version == ANY:
                identity = identity.with_version(package.version_info)
        return identity, 'high'

    try:
        return Purl.build('generic', package.name, version=package.version_info), 'low'
    except ParseError as e:
        failures.append(_failure(package.spdx_id, e))
        return None, ''


def normalize_sbom(document: SpdxDocument, ingested_at: datetime | None = None) -> NormalizedSbom:
    """Turn an SPDX document into package entries and package relationships."""
    record = DocumentRecord(
        id=f"{DocumentType.SPDX}:{document.document_id}",
        type=DocumentType.SPDX,
        ingested_at=ingested_at or _now(),
        name=document.name,
    )
    result = NormalizedSbom(document=record)

    identities: dict[str, PackageIdentity] = {}
    for package in document.packages:
        identity, confidence = _spdx_identity(package, result.failures)
        if identity is None:
            continue
        identities[package.spdx_id] = identity
        result.packages.append(SbomPackage(identity, package.spdx_id, confidence))

    edges: dict[tuple, Edge] = {}
    for index, relationship in enumerate(document.relationships):
        mapped = SPDX_RELATIONSHIPS.get(relationship.relationship_type.upper())
        if mapped is None:
            continue
        kind, reversed_direction = mapped
        left, right = relationship.spdx_element_id, relationship.related_spdx_element
        if reversed_direction:
            left, right = right, left
        if document.spdx_id in (left, right):
            # relations of the document itself are recorded per package
            continue
        missing = [e for e in (left, right) if e not in identities]
        if missing:
            result.failures.append(
                _failure(
                    f"relationships[{index}]",
                    ParseError(f"Unknown SPDX element(s): {', '.join(missing)}"),
                ),
            )
            continue
        edge = Edge(kind, identities[left], identities[right])
        edges.setdefault(edge.key, edge)
    result.edges = list(edges.values())

    if not result.packages and not result.edges:
        raise EmptyDocumentError(record.id, result.failures)

    logger.debug(
        'SBOM normalized', document_id=record.id,
        packages=len(result.packages), edges=len(result.edges),
        failures=len(result.failures),
    )
    return result
