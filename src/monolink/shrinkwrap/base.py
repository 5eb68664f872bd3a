"""The lockfile contract shared by every package manager format.

Each supported format implements :class:`ShrinkwrapFile`. Validation that
does not depend on a format lives in the free functions of this module and
operates only on the contract.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Set

from monolink.common.filesystem import write_text_if_changed
from monolink.common.logging_utils import Timer, extra_context, is_debug_enabled
from monolink.constants import Constants, PackageManagers
from monolink.project import Project
from monolink.specifier import DependencySpecifier, DependencySpecifierType
from monolink.versioning import satisfies

logger = logging.getLogger(__name__)


class ShrinkwrapFile(ABC):
    """A parsed lockfile.

    Queries reflect the file as loaded plus any in-memory mutations made by
    :meth:`try_ensure_compatible_dependency`; only :meth:`save` persists.
    """

    package_manager: PackageManagers
    is_workspace_compatible: bool = False

    def __init__(self) -> None:
        # Non-semver specifiers already reported, so each warns only once.
        self.warned_specifiers: Set[str] = set()

    @abstractmethod
    def get_top_level_dependency_version(self, dependency_name: str) -> Optional[DependencySpecifier]:
        """Return the version resolved at the top of the install tree."""

    @abstractmethod
    def try_ensure_dependency_version(
        self, specifier: DependencySpecifier, consumer_key: str
    ) -> Optional[DependencySpecifier]:
        """Return the version resolved for one consumer, possibly rewriting the file."""

    @abstractmethod
    def get_temp_project_names(self) -> List[str]:
        """Sorted names of the synthetic per-project packages in the file."""

    @abstractmethod
    def serialize(self) -> str:
        """Render the file in its native format."""

    def get_workspace_keys(self) -> List[str]:
        """Sorted importer keys for workspace lockfiles; empty otherwise."""
        return []

    def has_compatible_top_level_dependency(self, specifier: DependencySpecifier) -> bool:
        """Return True if the top-level resolution satisfies ``specifier``."""
        resolved = self.get_top_level_dependency_version(specifier.package_name)
        if resolved is None:
            return False
        return check_dependency_version(specifier, resolved, self.warned_specifiers)

    def try_ensure_compatible_dependency(self, specifier: DependencySpecifier, consumer_key: str) -> bool:
        """Return True if ``consumer_key`` resolves ``specifier`` to a compatible version.

        Formats that can reuse another consumer's resolution rewrite the
        file in memory to do so.
        """
        resolved = self.try_ensure_dependency_version(specifier, consumer_key)
        if resolved is None:
            return False
        return check_dependency_version(specifier, resolved, self.warned_specifiers)

    def should_force_recheck(self) -> bool:
        """Formats can ask for a reinstall even when the lockfile looks current."""
        return False

    def save(self, path: str) -> bool:
        """Serialize to ``path``; returns True if the file content changed."""
        with Timer() as t:
            written = write_text_if_changed(path, self.serialize())
        if is_debug_enabled(logger):
            logger.debug(
                "Shrinkwrap saved",
                extra=extra_context(
                    event="shrinkwrap_save",
                    component="shrinkwrap",
                    action=self.package_manager.value,
                    outcome="written" if written else "unchanged",
                    duration_ms=t.duration_ms(),
                    target=path,
                ),
            )
        return written


def check_dependency_version(
    project_specifier: DependencySpecifier,
    shrinkwrap_specifier: DependencySpecifier,
    warned_specifiers: Set[str],
) -> bool:
    """Decide whether a lockfile resolution satisfies what a project requests.

    Aliases only match aliases of the same target package; the targets are
    then compared. Specifier kinds that have no semver meaning are accepted,
    with one warning per distinct specifier.
    """
    if project_specifier.specifier_type == DependencySpecifierType.ALIAS:
        if (
            shrinkwrap_specifier.specifier_type != DependencySpecifierType.ALIAS
            or shrinkwrap_specifier.alias_target is None
            or project_specifier.alias_target is None
            or shrinkwrap_specifier.alias_target.package_name != project_specifier.alias_target.package_name
        ):
            return False
        project_specifier = project_specifier.alias_target
        shrinkwrap_specifier = shrinkwrap_specifier.alias_target

    if project_specifier.specifier_type in (DependencySpecifierType.VERSION, DependencySpecifierType.RANGE):
        return satisfies(shrinkwrap_specifier.version_specifier, project_specifier.version_specifier)

    key = str(project_specifier)
    if key not in warned_specifiers:
        warned_specifiers.add(key)
        logger.warning(
            "Not validating %s-based specifier: %s",
            project_specifier.specifier_type.value,
            key,
        )
    return True


def is_temp_project_name(name: str) -> bool:
    return name.startswith(Constants.TEMP_PROJECT_SCOPE + "/")


def temp_project_names_from_keys(keys: Iterable[str]) -> List[str]:
    """Filter dependency names down to the reserved temp scope, sorted."""
    return sorted(key for key in keys if is_temp_project_name(key))


def importer_key_for(workspace_root: str, project_folder: str) -> str:
    """Importer key of a project: its folder relative to the workspace, with forward slashes."""
    return os.path.relpath(project_folder, workspace_root).replace(os.sep, "/")


def find_orphaned_projects(
    shrinkwrap: ShrinkwrapFile,
    projects: Sequence[Project],
    workspace_root: Optional[str] = None,
) -> List[str]:
    """Return lockfile entries that no longer correspond to a project.

    Workspace lockfiles are compared by importer key when ``workspace_root``
    is given; otherwise temp project names are compared.
    """
    if shrinkwrap.is_workspace_compatible and workspace_root is not None:
        expected = {importer_key_for(workspace_root, project.folder) for project in projects}
        return [key for key in shrinkwrap.get_workspace_keys() if key not in expected]

    expected = {project.temp_project_name for project in projects}
    return [name for name in shrinkwrap.get_temp_project_names() if name not in expected]
