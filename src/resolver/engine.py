"""Backtracking dependency resolver.

The search is an explicit loop over a FIFO frontier of requirements, an
assignment of chosen versions, and a stack of decision points. A conflict
restores the snapshot of the most recent decision that still has untried
alternatives; an exhausted stack is reported as unsatisfiable.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional

from common.errors import (
    Conflict,
    MetadataError,
    NetworkError,
    NoCompatibleArtifactError,
    PackageNotFoundError,
    ParseError,
    UnsatisfiableConstraintsError,
)
from common.logging_utils import Timer, extra_context, is_debug_enabled
from index.base import MetadataSource
from index.models import Release
from index.tags import ArtifactSelector
from versioning.models import PackageRequirement
from versioning.ranges import VersionRange
from .models import Resolution, ResolvedPackage
from .state import Candidate, Decision, ResolutionState

if TYPE_CHECKING:
    from lockfile.model import LockedPackage, Lockfile

logger = logging.getLogger(__name__)


class Resolver:
    """Choose one version per package such that every requirement holds.

    Args:
        source: Metadata provider for releases and per-version dependencies.
        lockfile: Optional previous resolution; its pins are tried first and
            need no metadata lookups unless they end up backtracked.
        selector: Artifact selection rule; defaults to one built for the
            source's target environment.
    """

    def __init__(
        self,
        source: MetadataSource,
        lockfile: Optional["Lockfile"] = None,
        selector: Optional[ArtifactSelector] = None,
    ):
        self.source = source
        self.selector = selector or ArtifactSelector(source.environment)
        self._pins: Dict[str, "LockedPackage"] = lockfile.pins() if lockfile is not None else {}

    def resolve(self, requirements: Iterable[PackageRequirement]) -> Resolution:
        """Resolve direct requirements into a complete, conflict-free version set.

        Raises:
            UnsatisfiableConstraintsError: No assignment satisfies every requirement.
            PackageNotFoundError: A direct requirement names an unknown package.
            NetworkError: The index could not be reached.
        """
        direct = list(requirements)
        unpinned = [r.name for r in direct if r.name not in self._pins]
        if unpinned:
            self.source.prefetch(unpinned)

        state = ResolutionState(frontier=deque(direct))
        stack: List[Decision] = []
        with Timer() as timer:
            while True:
                conflict = self._run(state, stack)
                if conflict is None:
                    break
                logger.debug("Conflict on %s: %s", conflict.name, conflict.reason)
                state = self._backtrack(stack, conflict)
        resolution = self._finish(state)
        logger.info(
            "Resolved %d packages",
            len(resolution),
            extra=extra_context(
                event="resolve",
                component="resolver",
                outcome="success",
                count=len(resolution),
                duration_ms=timer.duration_ms(),
            ),
        )
        return resolution

    def _run(self, state: ResolutionState, stack: List[Decision]) -> Optional[Conflict]:
        while state.frontier:
            requirement = state.frontier.popleft()
            conflict = self._apply(requirement, state, stack)
            if conflict is not None:
                return conflict
        return None

    def _apply(
        self, req: PackageRequirement, state: ResolutionState, stack: List[Decision]
    ) -> Optional[Conflict]:
        name = req.name
        state.requirements[name] = state.requirements.get(name, ()) + (req,)
        constraint = state.constraint(name)
        if constraint.is_empty():
            return self._conflict(state, name, "no version satisfies all requirements")

        assigned = state.assignment.get(name)
        if assigned is None:
            return self._decide(name, constraint, state, stack)
        if not constraint.matches(assigned.version):
            return self._conflict(
                state, name, f"selected version {assigned.version} does not satisfy {constraint}"
            )
        new_extras = req.extras - assigned.extras
        if new_extras:
            try:
                extra_deps = self.source.extra_dependencies(name, assigned.version, new_extras)
            except (MetadataError, NetworkError) as e:
                return self._conflict(state, name, f"extras unavailable: {e.message}")
            state.assignment[name] = assigned.with_extras(new_extras, extra_deps)
            state.frontier.extend(extra_deps)
        return None

    def _decide(
        self,
        name: str,
        constraint: VersionRange,
        state: ResolutionState,
        stack: List[Decision],
    ) -> Optional[Conflict]:
        snapshot = state.copy()
        pin = self._pins.get(name)
        if pin is not None and constraint.matches(pin.version):
            candidate = self._pinned_candidate(pin, state.requested_extras(name))
            if candidate is not None:
                stack.append(Decision(name, constraint, snapshot, chosen=pin.version))
                self._assign(state, candidate)
                return None

        try:
            releases = self._candidates(name, constraint)
        except PackageNotFoundError:
            if state.is_direct(name):
                raise
            return self._conflict(state, name, "package not found on the index")
        decision = Decision(name, constraint, snapshot, remaining=releases)
        return self._try_next(decision, state, stack)

    def _try_next(
        self, decision: Decision, state: ResolutionState, stack: List[Decision]
    ) -> Optional[Conflict]:
        extras = state.requested_extras(decision.name)
        while decision.remaining:
            release = decision.remaining.pop(0)
            candidate = self._load_candidate(decision.name, release, extras)
            if candidate is None:
                continue
            decision.chosen = release.version
            stack.append(decision)
            self._assign(state, candidate)
            return None
        return self._conflict(state, decision.name, f"no remaining version matches {decision.range}")

    def _backtrack(self, stack: List[Decision], conflict: Conflict) -> ResolutionState:
        while stack:
            decision = stack.pop()
            if decision.remaining is None:
                decision.remaining = self._alternatives(decision)
            state = decision.snapshot.copy()
            if self._try_next(decision, state, stack) is None:
                logger.debug("Backtracked to %s %s", decision.name, decision.chosen)
                return state
        raise UnsatisfiableConstraintsError(conflict)

    def _alternatives(self, decision: Decision) -> List[Release]:
        """Enumerate releases a lockfile pin would have hidden, excluding the pin."""
        try:
            releases = self._candidates(decision.name, decision.range)
        except PackageNotFoundError:
            return []
        return [r for r in releases if r.version != decision.chosen]

    def _assign(self, state: ResolutionState, candidate: Candidate) -> None:
        state.assignment[candidate.name] = candidate
        state.frontier.extend(candidate.dependencies)
        if is_debug_enabled(logger):
            logger.debug(
                "Selected %s %s%s",
                candidate.name,
                candidate.version,
                " (locked)" if candidate.pinned else "",
                extra=extra_context(
                    event="decision",
                    component="resolver",
                    package=candidate.name,
                    version=str(candidate.version),
                    dependencies=[d.describe() for d in candidate.dependencies],
                ),
            )

    def _candidates(self, name: str, constraint: VersionRange) -> List[Release]:
        """Releases matching ``constraint`` that could be installed, newest first."""
        metadata = self.source.fetch(name)
        environment = self.source.environment
        allow_yanked = constraint.is_exact()
        releases = [
            r for r in reversed(metadata.releases)
            if constraint.matches(r.version)
            and (allow_yanked or not r.yanked)
            and environment.accepts_python(r.requires_python)
            and self.selector.is_compatible(r)
        ]
        if not constraint.allows_prereleases:
            finals = [r for r in releases if not r.version.is_prerelease]
            if finals:
                releases = finals
        return releases

    def _load_candidate(
        self, name: str, release: Release, extras: FrozenSet[str]
    ) -> Optional[Candidate]:
        try:
            artifact = self.selector.select(name, release)
            dependencies = self.source.dependencies(name, release.version, extras)
        except (MetadataError, NetworkError, NoCompatibleArtifactError) as e:
            logger.warning(
                "Skipping %s %s: %s",
                name,
                release.version,
                e.message,
                extra=extra_context(event="candidate_skipped", component="resolver", package=name),
            )
            return None
        return Candidate(
            name=name,
            version=release.version,
            artifact=artifact,
            dependencies=tuple(dependencies),
            extras=frozenset(extras),
        )

    def _pinned_candidate(
        self, pin: "LockedPackage", extras: FrozenSet[str]
    ) -> Optional[Candidate]:
        try:
            dependencies = pin.requirements()
        except ParseError as e:
            logger.warning("Ignoring lockfile pin for %s: %s", pin.name, e.message)
            return None
        locked_extras = frozenset(pin.extras)
        missing = extras - locked_extras
        if missing:
            try:
                dependencies.extend(self.source.extra_dependencies(pin.name, pin.version, missing))
            except (MetadataError, NetworkError) as e:
                logger.warning("Ignoring lockfile pin for %s: %s", pin.name, e.message)
                return None
        return Candidate(
            name=pin.name,
            version=pin.version,
            artifact=pin.artifact,
            dependencies=tuple(dependencies),
            extras=locked_extras | extras,
            pinned=True,
        )

    def _conflict(self, state: ResolutionState, name: str, reason: str) -> Conflict:
        chains = [self._chain(state, req) for req in state.requirements.get(name, ())]
        return Conflict(name, chains, reason)

    @staticmethod
    def _chain(state: ResolutionState, req: PackageRequirement) -> str:
        """Render ``root -> a 1.0 -> b (>=2)`` by following first-seen parents."""
        parts = [req.describe()]
        parent = req.parent
        visited = set()
        while parent is not None and parent[0] not in visited:
            visited.add(parent[0])
            parts.insert(0, f"{parent[0]} {parent[1]}")
            introduced = state.requirements.get(parent[0])
            parent = introduced[0].parent if introduced else None
        return " -> ".join(["root"] + parts)

    @staticmethod
    def _finish(state: ResolutionState) -> Resolution:
        packages = {}
        for name, candidate in state.assignment.items():
            packages[name] = ResolvedPackage(
                name=name,
                version=candidate.version,
                artifact=candidate.artifact,
                direct=state.is_direct(name),
                dependencies=tuple(d.to_spec() for d in candidate.dependencies),
                extras=candidate.extras,
            )
        return Resolution(packages)
