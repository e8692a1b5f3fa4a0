"""
Semver constraint matching for chart version selection.

Constraint syntax:
    1.2.3, =1.2.3, !=1.2.3, >1.2, >=1.2.3, <2, <=1.2
    ~1.2.3   >=1.2.3 <1.3.0
    ^1.2.3   >=1.2.3 <2.0.0   (^0.2.3 means <0.3.0, ^0.0.3 means <0.0.4)
    1.2.x, 1.*, *            wildcards
    1.2 - 1.4.5              hyphen range
    ">=1.2, <1.5" or ">=1.2 <1.5"   AND
    "^1.2 || ^2.0"                  OR

Versions carrying a prerelease only match a group that has a prerelease
comparator. A leading "v" and missing minor/patch parts are accepted.
"""
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from semver.version import Version

from pds_integration.errors import NoMatchingVersion

_WILDCARDS = ('x', 'X', '*')

_OP_RE = re.compile(r'^\s*(!=|>=|=>|<=|=<|~>|>|<|=|~|\^)?\s*(\S+)\s*$')
_HYPHEN_RE = re.compile(r'^\s*(\S+)\s+-\s+(\S+)\s*$')


class ConstraintError(ValueError):
    pass


@dataclass
class _Partial:
    major: Optional[int]
    minor: Optional[int]
    patch: Optional[int]
    prerelease: Optional[str]

    @property
    def complete(self) -> bool:
        return self.patch is not None

    def lower(self) -> Version:
        return Version(self.major or 0, self.minor or 0, self.patch or 0, self.prerelease)

    def upper(self) -> Optional[Version]:
        """Exclusive bound of the wildcard range, None if unbounded"""
        if self.major is None:
            return None
        if self.minor is None:
            return Version(self.major + 1, 0, 0)
        if self.patch is None:
            return Version(self.major, self.minor + 1, 0)
        return None


def parse_version(text: str) -> Version:
    """Lenient version parse: leading v, missing minor/patch"""
    text = text.strip()
    if text[:1] in ('v', 'V'):
        text = text[1:]
    return Version.parse(text, optional_minor_and_patch=True)


def _parse_partial(text: str) -> _Partial:
    text = text.strip()
    if text[:1] in ('v', 'V'):
        text = text[1:]
    build_split = text.split('+', 1)[0]
    core, _, prerelease = build_split.partition('-')
    parts = core.split('.')
    if not core or len(parts) > 3:
        raise ConstraintError(f"invalid version in constraint: {text!r}")
    numbers: List[Optional[int]] = []
    wildcard = False
    for part in parts:
        if wildcard or part in _WILDCARDS:
            wildcard = True
            numbers.append(None)
            continue
        if not part.isdigit():
            raise ConstraintError(f"invalid version in constraint: {text!r}")
        numbers.append(int(part))
    while len(numbers) < 3:
        numbers.append(None)
    return _Partial(numbers[0], numbers[1], numbers[2], prerelease or None)


def _cmp(v: Version, other: Version) -> int:
    return v.compare(other)


def _in_range(v: Version, lower: Version, upper: Optional[Version]) -> bool:
    if _cmp(v, lower) < 0:
        return False
    return upper is None or _cmp(v, upper) < 0


Check = Callable[[Version], bool]


def _comparator(op: str, p: _Partial) -> Check:
    lower = p.lower()
    upper = p.upper()
    if op in ('', '='):
        if p.complete:
            return lambda v: _cmp(v, lower) == 0
        return lambda v: _in_range(v, lower, upper)
    if op == '!=':
        eq = _comparator('=', p)
        return lambda v: not eq(v)
    if op == '>':
        if p.complete:
            return lambda v: _cmp(v, lower) > 0
        if upper is None:
            return lambda v: False
        return lambda v: _cmp(v, upper) >= 0
    if op in ('>=', '=>'):
        return lambda v: _cmp(v, lower) >= 0
    if op == '<':
        return lambda v: _cmp(v, lower) < 0
    if op in ('<=', '=<'):
        if p.complete:
            return lambda v: _cmp(v, lower) <= 0
        if upper is None:
            return lambda v: True
        return lambda v: _cmp(v, upper) < 0
    if op in ('~', '~>'):
        if p.major is None:
            return lambda v: True
        if p.minor is None:
            tilde_upper = Version(p.major + 1, 0, 0)
        else:
            tilde_upper = Version(p.major, p.minor + 1, 0)
        return lambda v: _in_range(v, lower, tilde_upper)
    if op == '^':
        if p.major is None:
            return lambda v: True
        if p.major > 0 or p.minor is None:
            caret_upper = Version(p.major + 1, 0, 0)
        elif p.minor > 0 or p.patch is None:
            caret_upper = Version(0, p.minor + 1, 0)
        else:
            caret_upper = Version(0, 0, p.patch + 1)
        return lambda v: _in_range(v, lower, caret_upper)
    raise ConstraintError(f"unknown operator {op!r}")


class Constraint:
    """A parsed constraint expression (OR of AND groups)"""

    def __init__(self, expression: str):
        self.expression = expression
        self._groups: List[Tuple[List[Check], bool]] = []
        for group in expression.split('||'):
            self._groups.append(self._parse_group(group))
        if not self._groups:
            raise ConstraintError(f"empty constraint {expression!r}")

    @staticmethod
    def _tokens(group: str) -> List[str]:
        # Glue operators separated from their version by spaces: ">= 1.2"
        group = re.sub(r'(!=|>=|=>|<=|=<|~>|>|<|=|~|\^)\s+', r'\1', group)
        tokens: List[str] = []
        for chunk in group.split(','):
            tokens.extend(t for t in chunk.split() if t)
        return tokens

    def _parse_group(self, group: str) -> Tuple[List[Check], bool]:
        group = group.strip()
        if not group:
            raise ConstraintError(f"empty constraint group in {self.expression!r}")
        checks: List[Check] = []
        has_prerelease = False

        hyphen = _HYPHEN_RE.match(group)
        if hyphen:
            low = _parse_partial(hyphen.group(1))
            high = _parse_partial(hyphen.group(2))
            checks.append(_comparator('>=', low))
            checks.append(_comparator('<=', high))
            return checks, bool(low.prerelease or high.prerelease)

        for token in self._tokens(group):
            m = _OP_RE.match(token)
            if not m:
                raise ConstraintError(f"invalid constraint {token!r}")
            op, version = m.group(1) or '', m.group(2)
            partial = _parse_partial(version)
            has_prerelease = has_prerelease or bool(partial.prerelease)
            checks.append(_comparator(op, partial))
        return checks, has_prerelease

    def check(self, version: Version) -> bool:
        for checks, allows_prerelease in self._groups:
            if version.prerelease and not allows_prerelease:
                continue
            if all(c(version) for c in checks):
                return True
        return False

    def __repr__(self) -> str:
        return f"Constraint({self.expression!r})"


def select_versions(constraint: str, versions: Sequence[str]) -> List[str]:
    """
    Return the versions satisfying a constraint, newest first.

    Unparseable versions are ignored.

    Raises:
        NoMatchingVersion when nothing matches
    """
    parsed = Constraint(constraint)
    matching: List[Tuple[Version, str]] = []
    for raw in versions:
        try:
            version = parse_version(raw)
        except ValueError:
            continue
        if parsed.check(version):
            matching.append((version, raw))
    if not matching:
        raise NoMatchingVersion(f"no version found to match constraints {constraint}")
    matching.sort(key=lambda item: item[0], reverse=True)
    return [raw for _, raw in matching]
