"""Version range expressions.

A range is a disjunction (``||``) of conjunctions (``,``) of clauses. PEP 440
operators are evaluated with ``packaging.specifiers.Specifier``; caret
(``^1.2``), tilde (``~1.2``), bare versions and ``*`` are expanded into PEP 440
clauses when parsed.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

from packaging.specifiers import InvalidSpecifier, Specifier

from common.errors import ParseError
from .version import Version, parse_version

_CLAUSE_RE = re.compile(r"^(===|==|!=|~=|<=|>=|<|>|\^|~|=)?\s*(\S+)$")
_LOWER_OPS = {">=", ">", "~="}
_UPPER_OPS = {"<=", "<"}


@lru_cache(maxsize=4096)
def _specifier(op: str, version: str) -> Specifier:
    return Specifier(f"{op}{version}")


@dataclass(frozen=True)
class Clause:
    """A single comparison: operator plus version text (wildcards allowed for ==/!=)."""
    op: str
    version: str

    def matches(self, v: Version) -> bool:
        return _specifier(self.op, self.version).contains(v, prereleases=True)

    @property
    def is_wildcard(self) -> bool:
        return self.version.endswith(".*")

    @property
    def has_local(self) -> bool:
        return "+" in self.version

    def bound(self) -> Optional[Version]:
        """Public version for bound analysis, None for wildcard or arbitrary clauses."""
        if self.is_wildcard or self.op == "===":
            return None
        return Version(Version(self.version).public)

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


Conjunction = Tuple[Clause, ...]


def _bump(release: Tuple[int, ...], index: int) -> str:
    """Increment release segment ``index`` and drop everything after it."""
    parts = list(release[: index + 1])
    while len(parts) <= index:
        parts.append(0)
    parts[index] += 1
    return ".".join(str(p) for p in parts)


def _expand_caret(text: str) -> List[Clause]:
    v = parse_version(text)
    release = tuple(v.release)
    index = next((i for i, part in enumerate(release) if part != 0), len(release) - 1)
    return [Clause(">=", text), Clause("<", _bump(release, index))]


def _expand_tilde(text: str) -> List[Clause]:
    v = parse_version(text)
    release = tuple(v.release)
    index = 1 if len(release) >= 2 else 0
    return [Clause(">=", text), Clause("<", _bump(release, index))]


def _parse_clause(token: str) -> List[Clause]:
    """Parse one comma-separated token into one or more clauses."""
    token = token.strip()
    m = _CLAUSE_RE.match(token)
    if not m:
        raise ParseError(f"Invalid version constraint: {token!r}", context={"constraint": token})
    op, text = m.group(1) or "", m.group(2)
    if op == "^":
        return _expand_caret(text)
    if op == "~":
        return _expand_tilde(text)
    if op in ("", "="):
        if text == "*":
            return []
        op = "=="
    try:
        _specifier(op, text)
    except InvalidSpecifier as e:
        raise ParseError(f"Invalid version constraint: {token!r}", context={"constraint": token}) from e
    return [Clause(op, text)]


def _dedupe(clauses: Iterable[Clause]) -> Conjunction:
    seen = []
    for clause in clauses:
        if clause not in seen:
            seen.append(clause)
    return tuple(seen)


def _conjunction_is_empty(conj: Conjunction) -> bool:
    """True only when no version can satisfy every clause.

    Bounds come from public versions of ordered clauses; a single-point range
    is then checked directly. Anything undecidable counts as non-empty.
    """
    lower: Optional[Version] = None
    lower_inclusive = True
    upper: Optional[Version] = None
    upper_inclusive = True

    for clause in conj:
        bound = clause.bound()
        if bound is None:
            continue
        if clause.op in _LOWER_OPS or clause.op == "==":
            inclusive = clause.op != ">"
            if lower is None or bound > lower or (bound == lower and not inclusive):
                lower, lower_inclusive = bound, inclusive
        if clause.op in _UPPER_OPS or clause.op == "==":
            inclusive = clause.op != "<"
            if upper is None or bound < upper or (bound == upper and not inclusive):
                upper, upper_inclusive = bound, inclusive

    if lower is None or upper is None:
        return False
    if lower > upper:
        return True
    if lower == upper:
        if not (lower_inclusive and upper_inclusive):
            return True
        if any(c.has_local or c.op == "===" for c in conj):
            return False
        point = Version(lower.public)
        return not all(c.matches(point) for c in conj)
    return False


@dataclass(frozen=True)
class VersionRange:
    """Immutable set of acceptable versions.

    ``alternatives`` holds the disjuncts; each disjunct is a tuple of clauses
    that must all match. One empty disjunct means "any version"; no disjuncts
    at all means "no version" (the result of an empty intersection).
    """
    alternatives: Tuple[Conjunction, ...] = ((),)

    @classmethod
    def parse(cls, text: Optional[str]) -> "VersionRange":
        """Parse a range expression such as ``>=1.0,<2.0``, ``^1.4`` or ``<1 || >=3``.

        Raises:
            ParseError: If any clause is malformed.
        """
        if text is None:
            return ANY
        raw = text.strip()
        if raw in ("", "*"):
            return ANY
        alternatives = []
        for disjunct in raw.split("||"):
            disjunct = disjunct.strip()
            if not disjunct:
                raise ParseError(f"Empty alternative in range: {text!r}", context={"range": text})
            clauses: List[Clause] = []
            for token in disjunct.split(","):
                if not token.strip():
                    raise ParseError(f"Empty clause in range: {text!r}", context={"range": text})
                clauses.extend(_parse_clause(token))
            alternatives.append(_dedupe(clauses))
        return cls(tuple(alternatives))

    @classmethod
    def never(cls) -> "VersionRange":
        return cls(())

    @classmethod
    def exactly(cls, version: Version) -> "VersionRange":
        return cls(((Clause("==", str(version)),),))

    def matches(self, version: Version) -> bool:
        return any(all(c.matches(version) for c in conj) for conj in self.alternatives)

    def intersect(self, other: "VersionRange") -> "VersionRange":
        """Range matching exactly the versions both ranges match.

        Returns an always-false range (``is_empty()``) rather than raising when
        the two ranges cannot both hold.
        """
        if self.is_any():
            return other
        if other.is_any():
            return self
        combined = []
        for left in self.alternatives:
            for right in other.alternatives:
                conj = _dedupe(left + right)
                if not _conjunction_is_empty(conj) and conj not in combined:
                    combined.append(conj)
        return VersionRange(tuple(combined))

    def is_any(self) -> bool:
        return any(len(conj) == 0 for conj in self.alternatives)

    def is_empty(self) -> bool:
        return not self.alternatives or all(_conjunction_is_empty(c) for c in self.alternatives)

    def is_exact(self) -> bool:
        """True when every alternative pins a single version with ``==``/``===``."""
        return bool(self.alternatives) and all(
            any(c.op in ("==", "===") and not c.is_wildcard for c in conj)
            for conj in self.alternatives
        )

    @property
    def allows_prereleases(self) -> bool:
        """True when any clause explicitly names a pre-release."""
        for conj in self.alternatives:
            for clause in conj:
                text = clause.version[:-2] if clause.is_wildcard else clause.version
                try:
                    if Version(text).is_prerelease:
                        return True
                except ValueError:
                    continue
        return False

    def __str__(self) -> str:
        if not self.alternatives:
            return "<none>"
        if self.is_any():
            return "*"
        return " || ".join(",".join(str(c) for c in conj) for conj in self.alternatives)


ANY = VersionRange()
