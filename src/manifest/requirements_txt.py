"""Load a Manifest from a pip ``requirements.txt`` file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import requirements

from constants import Constants
from common.errors import ManifestError, ParseError
from index.tags import TargetEnvironment
from versioning.models import PackageRequirement
from versioning.parser import parse_requirement
from .model import Manifest

logger = logging.getLogger(__name__)


def _marker_of(line: str) -> Optional[str]:
    if ";" not in line:
        return None
    marker = line.split(";", 1)[1]
    marker = marker.split(" --", 1)[0].split(" #", 1)[0].strip()
    return marker or None


def _as_pep508(req) -> str:
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    specs = ",".join(f"{op}{ver}" for op, ver in req.specs)
    text = f"{req.name}{extras}{specs}"
    marker = _marker_of(req.line or "")
    if marker:
        text = f"{text}; {marker}"
    return text


def load_requirements_txt(path: str | Path, python_version: Optional[str] = None) -> Manifest:
    """Read direct requirements from a requirements file.

    Only named requirements are supported; editable, VCS and local path
    entries raise ManifestError. Environment markers are evaluated for
    ``python_version``.
    """
    p = Path(path)
    target = python_version or Constants.DEFAULT_PY_VERSION
    try:
        with open(p, "r", encoding="utf-8") as file:
            body = file.read()
    except (FileNotFoundError, IOError) as e:
        raise ManifestError(f"Couldn't read requirements file: {e}", context={"path": str(p)}) from e

    environment = TargetEnvironment.for_python(target).marker_environment()
    result: List[PackageRequirement] = []
    try:
        parsed = list(requirements.parse(body))
    except ValueError as e:
        raise ManifestError(f"Problem parsing {p.name}: {e}", context={"path": str(p)}) from e
    for req in parsed:
        if req.editable or req.vcs or req.local_file or req.uri or not req.name:
            raise ManifestError(
                f"Unsupported requirement: {req.line!r}",
                context={"path": str(p), "requirement": req.line},
            )
        try:
            parsed_req = parse_requirement(_as_pep508(req), environment=environment)
        except ParseError as e:
            raise ManifestError(e.message, context={"path": str(p), "requirement": req.line}) from e
        if parsed_req is None:
            logger.debug("Skipping %s: marker excludes python %s", req.name, target)
            continue
        result.append(parsed_req)

    logger.debug("Loaded %d requirements from %s", len(result), p)
    return Manifest(python_version=target, requirements=tuple(result))
