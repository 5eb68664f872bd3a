"""Reconciles the dependency requests of every project in the repo.

Two views are derived from the same traversal of project manifests:

* the preferred versions handed to the package manager, where any name
  requested with exactly one specifier is pinned implicitly and explicit
  pins from ``common-versions.yml`` override it;
* the list of version mismatches, where a name is requested with two or
  more different specifiers.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from monolink.config import CommonVersions
from monolink.constants import Constants
from monolink.project import DependencyType, Project, ProjectDependency
from monolink.versioning import satisfies

logger = logging.getLogger(__name__)

CYCLIC_SUFFIX = " (cyclic)"
COMMON_VERSIONS_CONSUMER = "preferred versions from common-versions.yml"


class PreferredVersionTable:
    """Dependency name to version specifier, split into implicit and explicit pins.

    Lookups return the explicit pin when one exists.
    """

    def __init__(
        self,
        implicit: Optional[Mapping[str, str]] = None,
        explicit: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.implicit: Dict[str, str] = dict(implicit or {})
        self.explicit: Dict[str, str] = dict(explicit or {})

    def get(self, name: str) -> Optional[str]:
        if name in self.explicit:
            return self.explicit[name]
        return self.implicit.get(name)

    def is_explicit(self, name: str) -> bool:
        return name in self.explicit

    def __contains__(self, name: object) -> bool:
        return name in self.explicit or name in self.implicit

    def __len__(self) -> int:
        return len(self.merged())

    def merged(self) -> Dict[str, str]:
        result = dict(self.implicit)
        result.update(self.explicit)
        return result

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(sorted(self.merged().items()))


def _eligible_dependencies(
    projects: Sequence[Project], common_versions: CommonVersions
) -> Iterator[Tuple[Project, ProjectDependency, bool]]:
    """Yield (consumer, dependency, is_cyclic) for every dependency that counts.

    Peer dependencies only state compatibility and are never installed by
    themselves. Allowed alternative versions and local siblings that will be
    linked from source do not take part either.
    """
    projects_by_name = {project.name: project for project in projects}
    for project in projects:
        for dependency in project.dependencies:
            if dependency.dependency_type == DependencyType.PEER:
                continue
            if common_versions.is_allowed_alternative(dependency.name, dependency.version):
                continue
            is_cyclic = project.is_cyclic_dependency(dependency.name)
            local_project = projects_by_name.get(dependency.name)
            if (
                local_project is not None
                and not is_cyclic
                and satisfies(local_project.version, dependency.version)
            ):
                continue
            yield project, dependency, is_cyclic


def collect_implicitly_preferred_versions(
    projects: Sequence[Project], common_versions: CommonVersions
) -> Dict[str, str]:
    """Pin every dependency that all eligible consumers request identically."""
    requested: Dict[str, Set[str]] = {}
    for _project, dependency, _is_cyclic in _eligible_dependencies(projects, common_versions):
        requested.setdefault(dependency.name, set()).add(dependency.version)

    implicit: Dict[str, str] = {}
    for name, versions in requested.items():
        if len(versions) == 1:
            implicit[name] = next(iter(versions))
    return implicit


def get_all_preferred_versions(
    projects: Sequence[Project], common_versions: CommonVersions
) -> PreferredVersionTable:
    """Build the table passed to the package manager.

    Raises:
        AmbiguousPreference: A name is pinned in both explicit tables.
    """
    explicit = common_versions.get_all_preferred_versions()
    implicit: Dict[str, str] = {}
    if common_versions.implicitly_preferred_versions:
        implicit = collect_implicitly_preferred_versions(projects, common_versions)
    logger.debug("Preferred versions: %d explicit, %d implicit", len(explicit), len(implicit))
    return PreferredVersionTable(implicit, explicit)


@dataclass
class VersionMismatch:
    """One dependency requested with several specifiers.

    ``consumers`` maps each specifier to the names of the consumers asking
    for it, both in first-seen order.
    """

    dependency_name: str
    consumers: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def versions(self) -> List[str]:
        return list(self.consumers)


def find_mismatches(
    projects: Sequence[Project],
    common_versions: CommonVersions,
    include_preferred_versions: bool = True,
) -> List[VersionMismatch]:
    """Report every dependency requested with two or more specifiers.

    Consumers that are cyclic for a dependency are grouped under the name
    with a ``" (cyclic)"`` suffix, since they are installed separately. The
    explicit preferred versions take part as a pseudo-consumer listed first,
    so a project drifting from a pin is reported too.
    """
    found: Dict[str, Dict[str, List[str]]] = {}

    def record(name: str, version: str, consumer: str) -> None:
        consumers = found.setdefault(name, {}).setdefault(version, [])
        # A project may declare the same dependency in several sections.
        if consumer not in consumers:
            consumers.append(consumer)

    if include_preferred_versions:
        for name, version in common_versions.preferred_versions.items():
            if not common_versions.is_allowed_alternative(name, version):
                record(name, version, COMMON_VERSIONS_CONSUMER)

    for project, dependency, is_cyclic in _eligible_dependencies(projects, common_versions):
        name = dependency.name + (CYCLIC_SUFFIX if is_cyclic else "")
        record(name, dependency.version, project.name)

    return [
        VersionMismatch(name, consumers)
        for name, consumers in found.items()
        if len(consumers) > 1
    ]


class VersionMismatchReport:
    """Renders mismatches for people or tools."""

    def __init__(self, mismatches: Iterable[VersionMismatch]) -> None:
        self.mismatches = list(mismatches)

    @property
    def number_of_mismatches(self) -> int:
        return len(self.mismatches)

    def to_dict(self) -> Dict[str, object]:
        return {
            "mismatchedVersions": [
                {
                    "dependencyName": mismatch.dependency_name,
                    "versions": [
                        {"version": version, "projects": list(consumers)}
                        for version, consumers in mismatch.consumers.items()
                    ],
                }
                for mismatch in self.mismatches
            ]
        }

    def render_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def render_text(self, truncate: bool = False) -> str:
        """Readable listing, optionally truncating long consumer lists.

        Args:
            truncate: Show at most five consumers per version and summarize the rest.
        """
        lines: List[str] = []
        for mismatch in self.mismatches:
            lines.append(mismatch.dependency_name)
            for version, consumers in mismatch.consumers.items():
                lines.append(f"  {version}")
                shown = consumers[: Constants.MISMATCH_PRINT_LIMIT] if truncate else consumers
                for consumer in shown:
                    lines.append(f"   - {consumer}")
                remaining = len(consumers) - len(shown)
                if remaining > 0:
                    lines.append(f"   (and {remaining} others)")
            lines.append("")
        return "\n".join(lines)
