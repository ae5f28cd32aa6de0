"""Project manifest model."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from constants import Constants
from versioning.models import PackageRequirement


@dataclass(frozen=True)
class Manifest:
    """Resolved structure of a project manifest: what the core needs from it."""
    name: Optional[str] = None
    version: Optional[str] = None
    python_version: str = Constants.DEFAULT_PY_VERSION
    requirements: Tuple[PackageRequirement, ...] = ()
    dev_requirements: Tuple[PackageRequirement, ...] = field(default_factory=tuple)

    def all_requirements(self, include_dev: bool = False) -> List[PackageRequirement]:
        """Direct requirements in declared order, dev requirements last."""
        reqs = list(self.requirements)
        if include_dev:
            reqs.extend(self.dev_requirements)
        return reqs

    def content_hash(self, include_dev: bool = False) -> str:
        """Stable digest of the requirement set and target interpreter.

        Used to detect lockfiles derived from a different manifest.
        """
        payload = {
            "python_version": self.python_version,
            "requirements": sorted(
                [r.name, str(r.range), sorted(r.extras)] for r in self.all_requirements(include_dev)
            ),
        }
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return "sha256:" + hashlib.sha256(blob).hexdigest()
