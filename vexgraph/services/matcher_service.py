"""Version comparison strategies and range evaluation.

The set of strategies is closed: one per ``VersionScheme``. Ecosystems that
are not recognized are compared with the generic strategy.
"""
import re
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass

from packaging.version import InvalidVersion
from packaging.version import Version

from vexgraph.core.errors import ComparisonError
from vexgraph.models.version import RangeKind
from vexgraph.models.version import VersionRange
from vexgraph.models.version import VersionScheme


class VersionStrategy(ABC):
    @abstractmethod
    def compare(self, left: str, right: str) -> int:
        """Return a negative number, zero or a positive number."""


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()


class SemverStrategy(VersionStrategy):
    """Lenient semantic versioning.

    Missing minor/patch components default to 0, a leading ``v`` and build
    metadata are ignored, and anything after the numeric core is taken as the
    pre-release, with or without a ``-`` separator.
    """

    _CORE = re.compile(r'^[vV]?(\d+)(?:\.(\d+))?(?:\.(\d+))?(.*)$')

    def parse(self, version: str) -> SemanticVersion:
        text = version.strip()
        match = self._CORE.match(text)
        if not match:
            raise ComparisonError(f"Not a semantic version: {version!r}", left=version)
        major, minor, patch, rest = match.groups()
        rest = rest.split('+', 1)[0]
        if re.match(r'^\.\d', rest):
            raise ComparisonError(
                f"Too many numeric components for a semantic version: {version!r}",
                left=version,
            )
        prerelease = rest.lstrip('-._~')
        return SemanticVersion(
            int(major),
            int(minor or 0),
            int(patch or 0),
            tuple(p for p in prerelease.split('.') if p) if prerelease else (),
        )

    def compare(self, left: str, right: str) -> int:
        a, b = self.parse(left), self.parse(right)
        core_a, core_b = (a.major, a.minor, a.patch), (b.major, b.minor, b.patch)
        if core_a != core_b:
            return -1 if core_a < core_b else 1
        if a.prerelease == b.prerelease:
            return 0
        # a pre-release sorts before the release itself
        if not a.prerelease:
            return 1
        if not b.prerelease:
            return -1
        return _compare_prerelease(a.prerelease, b.prerelease)


def _compare_prerelease(left: tuple[str, ...], right: tuple[str, ...]) -> int:
    for a, b in zip(left, right):
        if a.isdigit() and b.isdigit():
            diff = int(a) - int(b)
            if diff:
                return -1 if diff < 0 else 1
            continue
        if a.isdigit() != b.isdigit():
            # numeric identifiers have lower precedence
            return -1 if a.isdigit() else 1
        a_folded, b_folded = a.casefold(), b.casefold()
        if a_folded != b_folded:
            return -1 if a_folded < b_folded else 1
    if len(left) == len(right):
        return 0
    return -1 if len(left) < len(right) else 1


class Pep440Strategy(VersionStrategy):
    def _parse(self, version: str) -> Version:
        try:
            return Version(version.strip())
        except InvalidVersion as e:
            raise ComparisonError(f"Not a PEP 440 version: {version!r}", left=version) from e

    def compare(self, left: str, right: str) -> int:
        a, b = self._parse(left), self._parse(right)
        if a == b:
            return 0
        return -1 if a < b else 1


class GenericStrategy(VersionStrategy):
    """Component-wise comparison.

    Versions are split on non-alphanumeric boundaries and on digit/letter
    transitions. Numbers compare as integers, words case-insensitively.
    """

    _TOKEN = re.compile(r'\d+|[A-Za-z]+')

    def tokens(self, version: str) -> list[int | str]:
        found = self._TOKEN.findall(version)
        if not found:
            raise ComparisonError(f"No comparable components in {version!r}", left=version)
        return [int(t) if t.isdigit() else t.casefold() for t in found]

    def compare(self, left: str, right: str) -> int:
        a, b = self.tokens(left), self.tokens(right)
        for index in range(max(len(a), len(b))):
            x = a[index] if index < len(a) else None
            y = b[index] if index < len(b) else None
            if x is None or y is None:
                rest = a[index:] if y is None else b[index:]
                # trailing zeros are insignificant: 1.0 == 1.0.0
                if all(t == 0 for t in rest):
                    return 0
                return 1 if y is None else -1
            if isinstance(x, int) != isinstance(y, int):
                raise ComparisonError(
                    f"Cannot compare {left!r} with {right!r}: "
                    f"component {x!r} is not comparable with {y!r}",
                    left=left, right=right,
                )
            if x != y:
                return -1 if x < y else 1  # type: ignore[operator]
        return 0


STRATEGIES: dict[VersionScheme, VersionStrategy] = {
    VersionScheme.SEMVER: SemverStrategy(),
    VersionScheme.PEP440: Pep440Strategy(),
    VersionScheme.GENERIC: GenericStrategy(),
}


def get_strategy(scheme: VersionScheme) -> VersionStrategy:
    return STRATEGIES.get(scheme, STRATEGIES[VersionScheme.GENERIC])


def compare(left: str, right: str, scheme: VersionScheme) -> int:
    return get_strategy(scheme).compare(left, right)


def same_version(strategy: VersionStrategy, left: str, right: str) -> bool:
    if left.strip() == right.strip():
        return True
    try:
        return strategy.compare(left, right) == 0
    except ComparisonError:
        # versions that cannot be ordered are never equal
        return False


def matches(version: str | None, version_range: VersionRange, scheme: VersionScheme | None = None) -> bool:
    """Whether ``version`` lies inside ``version_range``.

    Raises ComparisonError when the outcome cannot be determined.
    """
    if version_range.is_unbounded:
        return True
    if version is None or not version.strip():
        raise ComparisonError(f"No version to compare against {version_range}")

    strategy = get_strategy(scheme or version_range.scheme)

    if version_range.kind == RangeKind.EXACT:
        return same_version(strategy, version, version_range.version or '')

    if version_range.kind in (RangeKind.LESS_THAN, RangeKind.LESS_THAN_OR_EQUAL):
        diff = strategy.compare(version, version_range.upper or '')
        if version_range.kind == RangeKind.LESS_THAN_OR_EQUAL:
            return diff <= 0
        return diff < 0

    if version_range.lower is not None:
        diff = strategy.compare(version, version_range.lower)
        if diff < 0 or (diff == 0 and not version_range.lower_inclusive):
            return False
    if version_range.upper is not None:
        diff = strategy.compare(version, version_range.upper)
        if diff > 0 or (diff == 0 and not version_range.upper_inclusive):
            return False
    return True
