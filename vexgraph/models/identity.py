"""Package identities: Package URLs and CPE names.

Both schemes are modelled as frozen dataclasses sharing the same small
interface (``canonical()``, ``without_version()``, ``with_version()``,
``identity_id()``), so callers can treat ``PackageIdentity`` as a tagged
variant and dispatch on the concrete class where the schemes differ.

Equality and hashing always go through the canonical string.
"""
import re
import uuid
from dataclasses import dataclass
from dataclasses import replace
from functools import cached_property
from typing import ClassVar
from typing import Literal
from typing import Union

from packageurl import PackageURL

from vexgraph.core.errors import ParseError

IDENTITY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'https://vexgraph.dev/identity')

# A '%' that does not introduce two hex digits.
_BAD_PERCENT = re.compile(r'%(?![0-9A-Fa-f]{2})')

ANY = '*'
NA = '-'

CPE_COMPONENTS = (
    'part', 'vendor', 'product', 'version', 'update', 'edition', 'language',
    'sw_edition', 'target_sw', 'target_hw', 'other',
)
CPE_PARTS = {'a', 'o', 'h', ANY}


class _CanonicalIdentity:
    """Shared equality, hashing and id derivation for identity variants."""

    def canonical(self) -> str:
        raise NotImplementedError

    def identity_id(self) -> str:
        """Deterministic UUIDv5 derived from the canonical key."""
        return str(uuid.uuid5(IDENTITY_NAMESPACE, self.canonical()))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _CanonicalIdentity):
            return NotImplemented
        return self.canonical() == other.canonical()

    def __hash__(self) -> int:
        return hash(self.canonical())

    def __str__(self) -> str:
        return self.canonical()


@dataclass(frozen=True, eq=False)
class Purl(_CanonicalIdentity):
    """A parsed and normalized Package URL."""
    type: str
    name: str
    namespace: str | None = None
    version: str | None = None
    qualifiers: tuple[tuple[str, str], ...] = ()
    subpath: str | None = None

    scheme: ClassVar[str] = 'purl'

    @classmethod
    def parse(cls, raw: str) -> 'Purl':
        text = raw.strip()
        if not text.startswith('pkg:'):
            raise ParseError(f"Not a package URL: {raw!r}", raw=raw)
        if _BAD_PERCENT.search(text):
            raise ParseError(f"Invalid percent-encoding in {raw!r}", raw=raw)
        try:
            purl = PackageURL.from_string(text)
        except ValueError as e:
            raise ParseError(f"Malformed package URL {raw!r}: {e}", raw=raw) from e
        return cls._from_packageurl(purl)

    @classmethod
    def build(
        cls,
        type: str,
        name: str,
        namespace: str | None = None,
        version: str | None = None,
        qualifiers: dict[str, str] | None = None,
    ) -> 'Purl':
        """Build a normalized Purl from components."""
        try:
            purl = PackageURL(
                type=type, namespace=namespace or None, name=name,
                version=version or None, qualifiers=qualifiers or {},
            )
        except ValueError as e:
            raise ParseError(f"Invalid package URL components: {e}") from e
        return cls._from_packageurl(purl)

    @classmethod
    def _from_packageurl(cls, purl: PackageURL) -> 'Purl':
        qualifiers = purl.qualifiers or {}
        return cls(
            type=purl.type,
            name=purl.name,
            namespace=purl.namespace or None,
            version=purl.version or None,
            qualifiers=tuple(
                sorted((k.lower(), v) for k, v in qualifiers.items() if v),
            ),
            subpath=purl.subpath or None,
        )

    @cached_property
    def _canonical(self) -> str:
        return PackageURL(
            type=self.type,
            namespace=self.namespace,
            name=self.name,
            version=self.version,
            qualifiers=dict(self.qualifiers),
            subpath=self.subpath,
        ).to_string()

    def canonical(self) -> str:
        return self._canonical

    @property
    def ecosystem(self) -> str:
        return self.type

    def without_version(self) -> 'Purl':
        return replace(self, version=None)

    def without_qualifiers(self) -> 'Purl':
        return replace(self, qualifiers=(), subpath=None)

    def with_version(self, version: str | None) -> 'Purl':
        return replace(self, version=version or None)


@dataclass(frozen=True, eq=False)
class Cpe(_CanonicalIdentity):
    """A CPE name in its 2.3 formatted-string form.

    ``*`` (ANY) and ``-`` (NA) are distinct values and are never collapsed.
    """
    part: str
    vendor: str = ANY
    product: str = ANY
    version: str = ANY
    update: str = ANY
    edition: str = ANY
    language: str = ANY
    sw_edition: str = ANY
    target_sw: str = ANY
    target_hw: str = ANY
    other: str = ANY

    scheme: ClassVar[str] = 'cpe'

    @classmethod
    def parse(cls, raw: str) -> 'Cpe':
        text = raw.strip()
        if text.startswith('cpe:2.3:'):
            return cls._parse_formatted(text, raw)
        if text.startswith('cpe:/'):
            return cls._parse_uri(text, raw)
        raise ParseError(f"Not a CPE name: {raw!r}", raw=raw)

    @classmethod
    def _parse_formatted(cls, text: str, raw: str) -> 'Cpe':
        fields = _split_formatted(text, raw)
        if len(fields) != 13:
            raise ParseError(
                f"CPE 2.3 name must have 11 components, got {len(fields) - 2}: {raw!r}",
                raw=raw,
            )
        values = []
        for value in fields[2:]:
            if value == '':
                raise ParseError(f"Empty CPE component in {raw!r}", raw=raw)
            values.append(value.lower())
        return cls._validated(values, raw)

    @classmethod
    def _parse_uri(cls, text: str, raw: str) -> 'Cpe':
        if _BAD_PERCENT.search(text):
            raise ParseError(f"Invalid percent-encoding in {raw!r}", raw=raw)
        components = text[len('cpe:/'):].split(':')
        if len(components) > 7:
            raise ParseError(
                f"CPE 2.2 name has too many components ({len(components)}): {raw!r}",
                raw=raw,
            )
        components += [''] * (7 - len(components))
        edition = components[5]
        packed = ['', '', '', '']
        if edition.startswith('~'):
            pieces = edition.split('~')
            if len(pieces) != 6:
                raise ParseError(f"Malformed packed edition in {raw!r}", raw=raw)
            edition, packed = pieces[1], pieces[2:]
        unpacked = components[:5] + [edition, components[6]] + packed
        values = [_decode_uri_component(v) for v in unpacked]
        return cls._validated(values, raw)

    @classmethod
    def _validated(cls, values: list[str], raw: str) -> 'Cpe':
        if values[0] not in CPE_PARTS:
            raise ParseError(f"Invalid CPE part {values[0]!r} in {raw!r}", raw=raw)
        return cls(**dict(zip(CPE_COMPONENTS, values)))

    @classmethod
    def from_vendor_product(cls, vendor: str, product: str, part: str = 'a') -> 'Cpe':
        return cls(
            part=part,
            vendor=_escape_value(vendor.strip().lower()) or ANY,
            product=_escape_value(product.strip().lower()) or ANY,
        )

    def components(self) -> tuple[str, ...]:
        return tuple(getattr(self, name) for name in CPE_COMPONENTS)

    @cached_property
    def _canonical(self) -> str:
        return 'cpe:2.3:' + ':'.join(self.components())

    def canonical(self) -> str:
        return self._canonical

    @property
    def ecosystem(self) -> str:
        return 'cpe'

    def without_version(self) -> 'Cpe':
        return replace(self, version=ANY)

    def with_version(self, version: str | None) -> 'Cpe':
        if not version:
            return replace(self, version=ANY)
        return replace(self, version=_escape_value(version.lower()))

    @property
    def concrete_version(self) -> str | None:
        """The version component, unescaped, or None for ANY / NA."""
        if self.version in (ANY, NA):
            return None
        return self.version.replace('\\', '')

    def matches(self, query: 'Cpe') -> bool:
        """Whether this (stored) name covers ``query``.

        ANY in the stored name matches every query value; the reverse never
        holds.
        """
        for stored, concrete in zip(self.components(), query.components()):
            if stored != ANY and stored != concrete:
                return False
        return True


PackageIdentity = Union[Purl, Cpe]


def _split_formatted(text: str, raw: str) -> list[str]:
    fields: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == '\\':
            current.append(ch)
            escaped = True
        elif ch == ':':
            fields.append(''.join(current))
            current = []
        else:
            current.append(ch)
    if escaped:
        raise ParseError(f"Dangling escape in {raw!r}", raw=raw)
    fields.append(''.join(current))
    return fields


def _escape_value(value: str) -> str:
    out = []
    for ch in value:
        if ch.isalnum() or ch in '_.-*?':
            out.append(ch)
        else:
            out.append('\\' + ch)
    return ''.join(out)


def _decode_uri_component(value: str) -> str:
    if value == '':
        return ANY
    if value == NA:
        return NA
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == '%':
            code = value[i + 1:i + 3].lower()
            i += 3
            # %01 and %02 are the URI bindings of the '?' and '*' wildcards
            if code == '01':
                out.append('?')
                continue
            if code == '02':
                out.append('*')
                continue
            ch = chr(int(code, 16))
        else:
            i += 1
        if ch.isalnum() or ch in '_.-':
            out.append(ch)
        else:
            out.append('\\' + ch)
    return ''.join(out).lower()


def parse_identity(
    raw: str,
    scheme_hint: Literal['purl', 'cpe'] | None = None,
) -> PackageIdentity:
    """Parse a PURL or CPE string into a canonical identity."""
    if raw is None:
        raise ParseError('Missing identity string')
    text = raw.strip()
    if scheme_hint == 'purl' or (scheme_hint is None and text.startswith('pkg:')):
        return Purl.parse(text)
    if scheme_hint == 'cpe' or (scheme_hint is None and text.startswith('cpe:')):
        return Cpe.parse(text)
    raise ParseError(f"Unrecognized identity scheme: {raw!r}", raw=raw)


def canonicalize(identity: PackageIdentity) -> str:
    return identity.canonical()


def without_version(identity: PackageIdentity) -> PackageIdentity:
    return identity.without_version()
