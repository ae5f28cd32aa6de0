"""Turning extracted source distributions into wheels."""

from __future__ import annotations

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from common.errors import InstallError
from common.logging_utils import Timer, extra_context

logger = logging.getLogger(__name__)

_PROJECT_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg")


def find_project_dir(source_dir: Path) -> Path:
    """Locate the project root of an extracted sdist (usually its single top-level directory)."""
    source_dir = Path(source_dir)
    if any((source_dir / m).is_file() for m in _PROJECT_MARKERS):
        return source_dir
    children = [p for p in source_dir.iterdir() if p.is_dir()]
    for child in sorted(children):
        if any((child / m).is_file() for m in _PROJECT_MARKERS):
            return child
    raise InstallError(
        "Source distribution has no pyproject.toml or setup.py",
        context={"path": str(source_dir)},
    )


class SourceBuilder(ABC):
    """Builds a wheel from an extracted source tree."""

    @abstractmethod
    def build(self, source_dir: Path, output_dir: Path) -> Path:
        """Build and return the path of a single wheel written into ``output_dir``.

        Raises:
            InstallError: The build failed or produced no wheel.
        """


class PipWheelBuilder(SourceBuilder):
    """Delegates the build to ``pip wheel --no-deps`` in a subprocess."""

    def __init__(self, python: Optional[str] = None, timeout: int = 900):
        self.python = python or sys.executable
        self.timeout = timeout

    def command(self, project_dir: Path, output_dir: Path) -> List[str]:
        return [
            self.python, "-m", "pip", "wheel",
            "--no-deps", "--disable-pip-version-check", "--quiet",
            "-w", str(output_dir),
            str(project_dir),
        ]

    def build(self, source_dir: Path, output_dir: Path) -> Path:
        project_dir = find_project_dir(source_dir)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.command(project_dir, output_dir)
        with Timer() as timer:
            try:
                result = subprocess.run(  # noqa: S603
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise InstallError(f"Unable to run wheel build: {e}", context={"project": str(project_dir)}) from e
        if result.returncode != 0:
            tail = "\n".join((result.stderr or "").strip().splitlines()[-20:])
            raise InstallError(
                f"Building a wheel for {project_dir.name} failed (exit {result.returncode})",
                context={"project": str(project_dir), "stderr": tail},
            )
        wheels = sorted(output_dir.glob("*.whl"))
        if not wheels:
            raise InstallError("Build produced no wheel", context={"project": str(project_dir)})
        logger.info(
            "Built %s",
            wheels[0].name,
            extra=extra_context(
                event="build", component="installer", outcome="success", duration_ms=timer.duration_ms()
            ),
        )
        return wheels[0]
