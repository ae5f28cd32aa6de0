"""Version & constraint model."""

from .version import Comparison, Version, compare, parse_version
from .ranges import ANY, Clause, VersionRange
from .models import PackageRequirement
from .parser import normalize_name, parse_manifest_entry, parse_requirement, parse_spec_string

__all__ = [
    "ANY",
    "Clause",
    "Comparison",
    "PackageRequirement",
    "Version",
    "VersionRange",
    "compare",
    "normalize_name",
    "parse_manifest_entry",
    "parse_requirement",
    "parse_spec_string",
    "parse_version",
]
