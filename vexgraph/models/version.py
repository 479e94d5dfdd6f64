import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote
from urllib.parse import unquote

from vexgraph.core.errors import ParseError
from vexgraph.models.identity import PackageIdentity
from vexgraph.models.identity import Purl


class VersionScheme(str, Enum):
    SEMVER = 'semver'
    PEP440 = 'pep440'
    GENERIC = 'generic'

    def __str__(self) -> str:
        return self.value


class RangeKind(str, Enum):
    EXACT = 'exact'
    LESS_THAN = 'less_than'
    LESS_THAN_OR_EQUAL = 'less_than_or_equal'
    RANGE = 'range'

    def __str__(self) -> str:
        return self.value


# PURL types whose versions follow semantic versioning.
SEMVER_ECOSYSTEMS = {
    'npm', 'cargo', 'golang', 'nuget', 'hex', 'pub', 'composer', 'swift',
    'cocoapods',
}
PEP440_ECOSYSTEMS = {'pypi'}

# vers:<scheme> names accepted as aliases of our schemes.
VERS_SCHEMES = {
    'semver': VersionScheme.SEMVER,
    'npm': VersionScheme.SEMVER,
    'cargo': VersionScheme.SEMVER,
    'golang': VersionScheme.SEMVER,
    'nuget': VersionScheme.SEMVER,
    'pypi': VersionScheme.PEP440,
    'pep440': VersionScheme.PEP440,
    'generic': VersionScheme.GENERIC,
}


def scheme_for(identity: PackageIdentity) -> VersionScheme:
    """Infer the version scheme from the identity's ecosystem.

    Unknown ecosystems use the generic scheme, never semver.
    """
    if isinstance(identity, Purl):
        if identity.type in SEMVER_ECOSYSTEMS:
            return VersionScheme.SEMVER
        if identity.type in PEP440_ECOSYSTEMS:
            return VersionScheme.PEP440
    return VersionScheme.GENERIC


@dataclass(frozen=True)
class VersionRange:
    """A constraint over versions of a single (versionless) package."""
    kind: RangeKind
    scheme: VersionScheme = VersionScheme.GENERIC
    version: str | None = None
    lower: str | None = None
    upper: str | None = None
    lower_inclusive: bool = True
    upper_inclusive: bool = False

    def __post_init__(self):
        if self.kind == RangeKind.EXACT and not self.version:
            raise ParseError('Exact range requires a version')
        if self.kind in (RangeKind.LESS_THAN, RangeKind.LESS_THAN_OR_EQUAL) and self.upper is None:
            raise ParseError(f"{self.kind} range requires an upper bound")

    @classmethod
    def exact(cls, version: str, scheme: VersionScheme = VersionScheme.GENERIC) -> 'VersionRange':
        return cls(RangeKind.EXACT, scheme, version=version)

    @classmethod
    def less_than(cls, bound: str, scheme: VersionScheme = VersionScheme.GENERIC, inclusive: bool = False) -> 'VersionRange':
        kind = RangeKind.LESS_THAN_OR_EQUAL if inclusive else RangeKind.LESS_THAN
        return cls(kind, scheme, upper=bound, upper_inclusive=inclusive)

    @classmethod
    def between(
        cls,
        lower: str | None,
        upper: str | None,
        scheme: VersionScheme = VersionScheme.GENERIC,
        lower_inclusive: bool = True,
        upper_inclusive: bool = False,
    ) -> 'VersionRange':
        if lower is None and upper is not None:
            return cls.less_than(upper, scheme, inclusive=upper_inclusive)
        return cls(
            RangeKind.RANGE, scheme, lower=lower, upper=upper,
            lower_inclusive=lower_inclusive if lower is not None else True,
            upper_inclusive=upper_inclusive if upper is not None else False,
        )

    @classmethod
    def any(cls, scheme: VersionScheme = VersionScheme.GENERIC) -> 'VersionRange':
        return cls.between(None, None, scheme)

    @property
    def is_unbounded(self) -> bool:
        return self.kind == RangeKind.RANGE and self.lower is None and self.upper is None

    def with_scheme(self, scheme: VersionScheme) -> 'VersionRange':
        return VersionRange(
            self.kind, scheme, self.version, self.lower, self.upper,
            self.lower_inclusive, self.upper_inclusive,
        )

    def constraints(self) -> list[str]:
        """vers constraints, with versions percent-encoded."""
        if self.kind == RangeKind.EXACT:
            return [_encode(self.version or '')]
        if self.kind == RangeKind.LESS_THAN:
            return [f"<{_encode(self.upper)}"]
        if self.kind == RangeKind.LESS_THAN_OR_EQUAL:
            return [f"<={_encode(self.upper)}"]
        parts = []
        if self.lower is not None:
            parts.append(f"{'>=' if self.lower_inclusive else '>'}{_encode(self.lower)}")
        if self.upper is not None:
            parts.append(f"{'<=' if self.upper_inclusive else '<'}{_encode(self.upper)}")
        return parts or ['*']

    def __str__(self) -> str:
        return f"vers:{self.scheme.value}/" + '|'.join(self.constraints())


def _encode(version: str | None) -> str:
    # only alphanumerics and '_.-~+:' are left unencoded
    return quote(version or '', safe='+:')


def checked_range(version_range: VersionRange) -> VersionRange:
    """Return ``version_range`` if its vers form parses back to the same range."""
    for version in (version_range.version, version_range.lower, version_range.upper):
        if version is not None and not version.strip():
            raise ParseError(f"Blank version in {version_range}", raw=str(version_range))
    if parse_range(str(version_range)) != version_range:
        raise ParseError(f"Range does not survive its vers form: {version_range}", raw=str(version_range))
    return version_range


_CONSTRAINT = re.compile(r'^(>=|<=|>|<|==|=|!=)?\s*(\S+)$')


def parse_range(expression: str, scheme: VersionScheme | None = None) -> VersionRange:
    """Parse a range expression.

    Accepts vers URIs (``vers:npm/>=1.0.0|<2.0.0``) and plain operator lists
    (``>=1.0, <2.0``, ``<1.3.0``, ``1.2.3``, ``*``). When ``scheme`` is given
    it overrides the scheme named by a vers URI.
    """
    if expression is None or not expression.strip():
        raise ParseError('Empty version range expression')
    text = expression.strip()
    declared = VersionScheme.GENERIC
    is_vers = text.lower().startswith('vers:')

    if is_vers:
        head, sep, body = text[len('vers:'):].partition('/')
        if not sep or not head:
            raise ParseError(f"Malformed vers expression: {expression!r}", raw=expression)
        declared = VERS_SCHEMES.get(head.lower(), VersionScheme.GENERIC)
        raw_constraints = body.split('|')
    else:
        raw_constraints = re.split(r'[|,]', text)

    scheme = scheme or declared
    constraints = [c.strip() for c in raw_constraints if c.strip()]
    if not constraints:
        raise ParseError(f"No constraints in {expression!r}", raw=expression)
    if constraints == ['*']:
        return VersionRange.any(scheme)

    exact: str | None = None
    lower: tuple[str, bool] | None = None
    upper: tuple[str, bool] | None = None
    for constraint in constraints:
        match = _CONSTRAINT.match(constraint)
        if not match:
            raise ParseError(f"Malformed constraint {constraint!r} in {expression!r}", raw=expression)
        op, version = match.group(1) or '=', match.group(2)
        if is_vers:
            version = unquote(version)
        if op == '!=':
            raise ParseError(f"Exclusion constraints are not supported: {expression!r}", raw=expression)
        if op in ('=', '=='):
            if exact is not None:
                raise ParseError(f"Several exact versions in {expression!r}", raw=expression)
            exact = version
        elif op in ('>', '>='):
            if lower is not None:
                raise ParseError(f"Several lower bounds in {expression!r}", raw=expression)
            lower = (version, op == '>=')
        else:
            if upper is not None:
                raise ParseError(f"Several upper bounds in {expression!r}", raw=expression)
            upper = (version, op == '<=')

    if exact is not None:
        if lower is not None or upper is not None:
            raise ParseError(f"Exact version mixed with bounds in {expression!r}", raw=expression)
        return VersionRange.exact(exact, scheme)
    if lower is None and upper is not None:
        return VersionRange.less_than(upper[0], scheme, inclusive=upper[1])
    lower_version, lower_inclusive = lower or (None, True)
    upper_version, upper_inclusive = upper or (None, False)
    return VersionRange.between(
        lower_version, upper_version, scheme,
        lower_inclusive=lower_inclusive, upper_inclusive=upper_inclusive,
    )
