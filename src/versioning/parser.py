"""Requirement string parsing utilities."""

import re
from typing import Dict, Iterable, Optional

from packaging.markers import InvalidMarker, UndefinedComparison, UndefinedEnvironmentName
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from common.errors import ParseError
from .models import PackageRequirement, Parent
from .ranges import VersionRange

_SPEC_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*(?:\[([^\]]*)\])?\s*(.*?)\s*$")


def normalize_name(name: str) -> str:
    """Apply PEP 503 normalization (case folding, runs of ``-_.`` become ``-``)."""
    return canonicalize_name(name.strip())


def _parse_extras(raw: Optional[str]) -> frozenset:
    if not raw:
        return frozenset()
    return frozenset(normalize_name(e) for e in raw.split(",") if e.strip())


def marker_applies(
    requirement: Requirement,
    environment: Optional[Dict[str, str]],
    extras: Iterable[str] = (),
) -> bool:
    """Evaluate a requirement's environment marker for the target and requested extras.

    Requirements without markers always apply; with no environment every
    marker that does not mention an extra is assumed to apply.
    """
    marker = requirement.marker
    if marker is None:
        return True
    if environment is None and "extra" not in str(marker):
        return True
    env = dict(environment or {})
    for extra in [""] + sorted(extras):
        env["extra"] = extra
        try:
            if marker.evaluate(env):
                return True
        except (UndefinedEnvironmentName, UndefinedComparison):
            continue
    return False


def parse_requirement(
    text: str,
    parent: Optional[Parent] = None,
    environment: Optional[Dict[str, str]] = None,
    extras: Iterable[str] = (),
) -> Optional[PackageRequirement]:
    """Parse a PEP 508 requirement string such as ``requests[socks]>=2.0; python_version>'3'``.

    Returns None when the environment marker excludes the requirement for the
    given target environment and extras.

    Raises:
        ParseError: If the string is not a valid requirement.
    """
    try:
        req = Requirement(text)
    except (InvalidRequirement, InvalidMarker) as e:
        raise ParseError(f"Invalid requirement: {text!r}", context={"requirement": text}) from e
    if req.url:
        raise ParseError(
            f"Direct URL requirements are not supported: {text!r}",
            context={"requirement": text},
        )
    if not marker_applies(req, environment, extras):
        return None
    spec = str(req.specifier)
    return PackageRequirement(
        name=normalize_name(req.name),
        range=VersionRange.parse(spec),
        extras=frozenset(normalize_name(e) for e in req.extras),
        parent=parent,
        raw=text,
    )


def parse_spec_string(text: str, parent: Optional[Parent] = None) -> PackageRequirement:
    """Parse ``name[extras] <range>`` where the range uses this project's range syntax.

    This is the form written by ``PackageRequirement.to_spec`` into lockfiles.
    """
    m = _SPEC_RE.match(text or "")
    if not m:
        raise ParseError(f"Invalid requirement: {text!r}", context={"requirement": text})
    name, extras, spec = m.group(1), m.group(2), m.group(3)
    return PackageRequirement(
        name=normalize_name(name),
        range=VersionRange.parse(spec),
        extras=_parse_extras(extras),
        parent=parent,
        raw=text,
    )


def parse_manifest_entry(
    identifier: str,
    raw_spec: Optional[str],
    extras: Iterable[str] = (),
) -> PackageRequirement:
    """Construct a direct PackageRequirement from manifest fields.

    ``raw_spec`` accepts PEP 440 specifiers plus caret/tilde/bare/``*`` forms;
    ``None``, empty and ``latest`` mean any version.
    """
    if raw_spec is None or raw_spec.strip() == "" or raw_spec.strip().lower() == "latest":
        range_ = VersionRange.parse(None)
    else:
        range_ = VersionRange.parse(raw_spec)
    return PackageRequirement(
        name=normalize_name(identifier),
        range=range_,
        extras=frozenset(normalize_name(e) for e in extras),
        parent=None,
        raw=f"{identifier} {raw_spec or '*'}".strip(),
    )
