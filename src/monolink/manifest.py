"""Explicit edits to project manifests.

Every change to a project's package.json goes through a
:class:`SetDependencyVersion` command applied by
:func:`apply_dependency_changes`, which reports whether anything changed.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional

from monolink.common.filesystem import write_text_if_changed
from monolink.project import DependencyType, Project, dependencies_from_manifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetDependencyVersion:
    """Rewrite the version of one dependency of one project.

    When ``dependency_type`` is None every section declaring the dependency
    is updated.
    """

    project_name: str
    dependency_name: str
    version: str
    dependency_type: Optional[DependencyType] = None


@dataclass(frozen=True)
class ManifestUpdate:
    """Result of applying changes: the new project view and whether it differs."""

    project: Project
    modified: bool


def apply_dependency_changes(project: Project, changes: Iterable[SetDependencyVersion]) -> ManifestUpdate:
    """Apply dependency version changes to ``project``.

    Commands addressed to other projects are ignored. The input project is not
    mutated; a new :class:`Project` is returned when something changed.

    Raises:
        KeyError: A command names a dependency the project does not declare.
    """
    manifest: Dict[str, Any] = copy.deepcopy(dict(project.manifest))
    modified = False

    for change in changes:
        if change.project_name != project.name:
            continue
        sections: List[DependencyType] = (
            [change.dependency_type] if change.dependency_type else list(DependencyType)
        )
        found = False
        for dependency_type in sections:
            section = manifest.get(dependency_type.value)
            if not isinstance(section, dict) or change.dependency_name not in section:
                continue
            found = True
            if section[change.dependency_name] != change.version:
                logger.debug(
                    "Setting %s %s of %s to %s",
                    dependency_type.value,
                    change.dependency_name,
                    project.name,
                    change.version,
                )
                section[change.dependency_name] = change.version
                modified = True
        if not found:
            raise KeyError(
                f'Project "{project.name}" does not declare a dependency on "{change.dependency_name}"'
            )

    if not modified:
        return ManifestUpdate(project, False)

    updated = replace(project, dependencies=dependencies_from_manifest(manifest), manifest=manifest)
    return ManifestUpdate(updated, True)


def serialize_manifest(manifest: Dict[str, Any]) -> str:
    """Serialize a manifest the way npm writes package.json files."""
    return json.dumps(manifest, indent=2, ensure_ascii=False) + "\n"


def save_manifest(project: Project) -> bool:
    """Write the project's manifest back to disk if its content changed.

    Returns:
        True if the file was written.
    """
    return write_text_if_changed(project.manifest_path, serialize_manifest(dict(project.manifest)))


def save_if_modified(update: ManifestUpdate) -> bool:
    """Persist a :class:`ManifestUpdate` that reports a modification."""
    if not update.modified:
        return False
    written = save_manifest(update.project)
    if written:
        logger.info("Updated %s", update.project.manifest_path)
    return written
