"""Load a Manifest from ``pyproject.toml``.

Sections are read in this order, later ones winning on conflicts:
``[tool.poetry]``, then ``[tool.pkgflow]``. PEP 621 ``[project]`` supplies
name, version and dependencies only when neither tool section declares them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from constants import Constants
from common.errors import ManifestError, ParseError
from versioning.models import PackageRequirement
from versioning.parser import parse_manifest_entry, parse_requirement
from versioning.ranges import VersionRange
from versioning.version import parse_version, python_version_tuple
from .model import Manifest

try:
    import tomllib as toml  # type: ignore
except ImportError:  # pragma: no cover - Python < 3.11
    import tomli as toml  # type: ignore

logger = logging.getLogger(__name__)


def _python_from_constraint(raw: str) -> Optional[str]:
    """Lowest ``X.Y`` named by a python constraint such as ``^3.8`` or ``>=3.9,<4``."""
    rng = VersionRange.parse(raw)
    for conj in rng.alternatives:
        for clause in conj:
            bound = clause.bound()
            if bound is not None:
                major, minor = python_version_tuple(str(bound))
                return f"{major}.{minor}"
    return None


def _entry_applies(python_spec: Optional[str], python_version: str) -> bool:
    if not python_spec:
        return True
    target = parse_version(python_version)
    return VersionRange.parse(python_spec).matches(target)


def _parse_table(
    deps: Any, section: str, python_version: str, skip_python: bool = False
) -> List[PackageRequirement]:
    """Parse a ``name = "constraint"`` / ``name = {version=..., extras=[...]}`` table."""
    if deps is None:
        return []
    if not isinstance(deps, dict):
        raise ManifestError(f"[{section}] must be a table", context={"section": section})
    result: List[PackageRequirement] = []
    for name, data in deps.items():
        if skip_python and name.lower() == "python":
            continue
        if isinstance(data, str):
            spec, extras, python_spec = data, [], None
        elif isinstance(data, dict):
            spec = data.get("version")
            extras = data.get("extras") or []
            python_spec = data.get("python")
        else:
            raise ManifestError(
                f"Unsupported dependency value for {name!r}",
                context={"section": section, "package": name},
            )
        try:
            if not _entry_applies(python_spec, python_version):
                logger.debug("Skipping %s: python %s excluded by %s", name, python_version, python_spec)
                continue
            result.append(parse_manifest_entry(name, spec, extras))
        except ParseError as e:
            raise ManifestError(
                f"Invalid constraint for {name!r}: {e.message}",
                context={"section": section, "package": name},
            ) from e
    return result


def _parse_pep621(deps: Any) -> List[PackageRequirement]:
    if not isinstance(deps, list):
        raise ManifestError("[project] dependencies must be a list", context={"section": "project"})
    result: List[PackageRequirement] = []
    for text in deps:
        try:
            req = parse_requirement(str(text))
        except ParseError as e:
            raise ManifestError(e.message, context={"section": "project"}) from e
        if req is not None:
            result.append(req)
    return result


def load_pyproject(path: str | Path) -> Manifest:
    """Read a Manifest from a ``pyproject.toml`` file.

    Raises:
        ManifestError: If the file is missing, is not valid TOML, or declares
            an invalid dependency.
    """
    p = Path(path)
    try:
        with open(p, "rb") as fh:
            data: Dict[str, Any] = toml.load(fh) or {}
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {p}", context={"path": str(p)}) from e
    except (OSError, toml.TOMLDecodeError) as e:
        raise ManifestError(f"Problem parsing {p.name}: {e}", context={"path": str(p)}) from e

    tool = data.get("tool") or {}
    poetry = tool.get("poetry") or {}
    pkgflow = tool.get(Constants.PROJECT_NAME) or {}
    project = data.get("project") or {}

    name = pkgflow.get("name") or poetry.get("name") or project.get("name")
    version = pkgflow.get("version") or poetry.get("version") or project.get("version")

    python_version = Constants.DEFAULT_PY_VERSION
    poetry_deps = poetry.get("dependencies") or {}
    if isinstance(poetry_deps, dict) and isinstance(poetry_deps.get("python"), str):
        try:
            python_version = _python_from_constraint(poetry_deps["python"]) or python_version
        except ParseError as e:
            raise ManifestError(f"Invalid python constraint: {e.message}", context={"path": str(p)}) from e
    if pkgflow.get("py_version"):
        python_version = str(pkgflow["py_version"])
    try:
        python_version_tuple(python_version)
    except ParseError as e:
        raise ManifestError(f"Invalid python version {python_version!r}", context={"path": str(p)}) from e

    if "dependencies" in pkgflow:
        requirements = _parse_table(pkgflow["dependencies"], "tool.pkgflow.dependencies", python_version)
    elif poetry_deps:
        requirements = _parse_table(poetry_deps, "tool.poetry.dependencies", python_version, skip_python=True)
    elif "dependencies" in project:
        requirements = _parse_pep621(project["dependencies"])
    else:
        requirements = []

    dev_requirements = _parse_table(
        pkgflow.get("dev-dependencies") if "dev-dependencies" in pkgflow else poetry.get("dev-dependencies"),
        "dev-dependencies",
        python_version,
    )

    manifest = Manifest(
        name=name,
        version=str(version) if version is not None else None,
        python_version=python_version,
        requirements=tuple(requirements),
        dev_requirements=tuple(dev_requirements),
    )
    logger.debug(
        "Loaded manifest %s with %d requirements (%d dev)",
        p,
        len(manifest.requirements),
        len(manifest.dev_requirements),
    )
    return manifest
