"""Version parsing and ordering on top of PEP 440 (``packaging.version``)."""

from enum import Enum
from typing import Tuple

from packaging import version as pep440

from common.errors import ParseError

Version = pep440.Version


class Comparison(Enum):
    """Outcome of comparing two versions."""
    LESS = -1
    EQUAL = 0
    GREATER = 1


def parse_version(text: str) -> Version:
    """Parse a version string.

    Numeric segments compare numerically, pre-releases sort below their
    release and missing trailing segments compare as zero.

    Raises:
        ParseError: If the string is not a valid version.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("Empty version string", context={"version": text})
    try:
        return pep440.Version(text.strip())
    except pep440.InvalidVersion as e:
        raise ParseError(f"Invalid version: {text!r}", context={"version": text}) from e


def compare(a: Version, b: Version) -> Comparison:
    """Three-way comparison of two parsed versions."""
    if a < b:
        return Comparison.LESS
    if a > b:
        return Comparison.GREATER
    return Comparison.EQUAL


def release_tuple(v: Version, width: int = 3) -> Tuple[int, ...]:
    """Release segments padded with zeros to ``width``."""
    release = tuple(v.release)
    if len(release) < width:
        release = release + (0,) * (width - len(release))
    return release


def python_version_tuple(text: str) -> Tuple[int, int]:
    """Return (major, minor) for an interpreter version such as "3.11" or "3.11.4"."""
    v = parse_version(text)
    major, minor = release_tuple(v, 2)[:2]
    return major, minor
