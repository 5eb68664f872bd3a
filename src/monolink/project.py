"""Immutable views of the projects that make up the monorepo."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from monolink.constants import Constants
from monolink.errors import ConfigurationError

logger = logging.getLogger(__name__)


class DependencyType(Enum):
    """The manifest section a dependency was declared in."""

    REGULAR = "dependencies"
    DEV = "devDependencies"
    OPTIONAL = "optionalDependencies"
    PEER = "peerDependencies"


# Order in which manifest sections are read.
MANIFEST_SECTIONS = (
    DependencyType.REGULAR,
    DependencyType.OPTIONAL,
    DependencyType.PEER,
    DependencyType.DEV,
)


@dataclass(frozen=True)
class ProjectDependency:
    """One dependency entry from a project manifest."""

    name: str
    version: str
    dependency_type: DependencyType


@dataclass(frozen=True)
class Project:
    """A member of the monorepo.

    Attributes:
        name: Package name from the manifest.
        version: Declared package version.
        folder: Absolute path of the project folder.
        dependencies: Dependency entries in manifest order.
        cyclic_dependency_projects: Names of sibling projects this project
            intentionally depends on through the registry rather than a local link.
        temp_project_name: Name of the synthetic package representing this
            project in the shared install folder.
        manifest: The raw package.json contents, used when writing it back.
    """

    name: str
    version: str
    folder: str
    dependencies: Tuple[ProjectDependency, ...] = ()
    cyclic_dependency_projects: FrozenSet[str] = frozenset()
    temp_project_name: str = ""
    manifest: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.temp_project_name:
            object.__setattr__(self, "temp_project_name", make_temp_project_name(self.name))

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.folder, Constants.PACKAGE_JSON_FILE)

    @property
    def unscoped_temp_name(self) -> str:
        return self.temp_project_name.split("/", 1)[-1]

    def dependencies_of(self, *types: DependencyType) -> List[ProjectDependency]:
        """Return dependency entries of the given types, in manifest order."""
        return [dep for dep in self.dependencies if dep.dependency_type in types]

    def get_dependency(
        self, name: str, dependency_type: Optional[DependencyType] = None
    ) -> Optional[ProjectDependency]:
        for dep in self.dependencies:
            if dep.name == name and (dependency_type is None or dep.dependency_type == dependency_type):
                return dep
        return None

    def is_cyclic_dependency(self, name: str) -> bool:
        return name in self.cyclic_dependency_projects


def make_temp_project_name(package_name: str, suffix: int = 0) -> str:
    """Derive the reserved-scope name of a project's synthetic package.

    Examples:
        ``@acme/web-app`` becomes ``@monolink-temp/web-app``.
    """
    unscoped = package_name.split("/", 1)[-1]
    if suffix:
        unscoped = f"{unscoped}-{suffix}"
    return f"{Constants.TEMP_PROJECT_SCOPE}/{unscoped}"


def dependencies_from_manifest(manifest: Mapping[str, Any]) -> Tuple[ProjectDependency, ...]:
    """Extract dependency entries from a package.json mapping."""
    entries: List[ProjectDependency] = []
    for dependency_type in MANIFEST_SECTIONS:
        section = manifest.get(dependency_type.value) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(
                f'The "{dependency_type.value}" field of "{manifest.get("name")}" must be an object'
            )
        for name, version in section.items():
            entries.append(ProjectDependency(name, str(version), dependency_type))
    return tuple(entries)


def load_project(
    folder: str,
    cyclic_dependency_projects: Iterable[str] = (),
    temp_project_name: str = "",
    expected_name: Optional[str] = None,
) -> Project:
    """Load a project from the package.json in ``folder``.

    Raises:
        ConfigurationError: The manifest is missing, unreadable, or does not
            declare the expected package name.
    """
    folder = os.path.abspath(folder)
    manifest_path = os.path.join(folder, Constants.PACKAGE_JSON_FILE)
    try:
        with open(manifest_path, "r", encoding="utf-8") as fh:
            manifest: Dict[str, Any] = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Project manifest not found: {manifest_path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read {manifest_path}: {exc}") from exc

    name = manifest.get("name")
    if not name:
        raise ConfigurationError(f'The manifest "{manifest_path}" is missing a "name" field')
    if expected_name and name != expected_name:
        raise ConfigurationError(
            f'The manifest "{manifest_path}" declares "{name}" but the repo configuration expects "{expected_name}"'
        )

    logger.debug("Loaded project %s from %s", name, folder)
    return Project(
        name=name,
        version=str(manifest.get("version", Constants.PLACEHOLDER_VERSION)),
        folder=folder,
        dependencies=dependencies_from_manifest(manifest),
        cyclic_dependency_projects=frozenset(cyclic_dependency_projects),
        temp_project_name=temp_project_name,
        manifest=manifest,
    )


def assign_temp_project_names(package_names: Iterable[str]) -> Dict[str, str]:
    """Give each package a unique temp project name, suffixing collisions."""
    used: set = set()
    result: Dict[str, str] = {}
    for package_name in package_names:
        suffix = 1
        candidate = make_temp_project_name(package_name)
        while candidate in used:
            suffix += 1
            candidate = make_temp_project_name(package_name, suffix)
        used.add(candidate)
        result[package_name] = candidate
    return result
