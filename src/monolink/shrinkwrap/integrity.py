"""Per-project dependency integrity maps derived from a pnpm lockfile.

Each project gets a ``shrinkwrap-deps.json`` file listing every external
package it can reach together with that package's integrity hash. Build
caches use it to notice when a project's installed dependencies changed.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from typing import Dict, Iterable, Mapping, Optional, Tuple

from monolink.common.filesystem import delete_file, write_text_if_changed
from monolink.constants import Constants
from monolink.project import Project
from monolink.shrinkwrap.base import importer_key_for, is_temp_project_name
from monolink.shrinkwrap.pnpm import PnpmShrinkwrapFile, dependency_version

logger = logging.getLogger(__name__)

MISSING_ENTRY = "Missing shrinkwrap entry!"


def _digest(entry: object) -> str:
    payload = json.dumps(entry, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(hashlib.sha256(payload).digest()).decode("ascii")


def package_id(name: str, version: str, packages: Optional[Mapping[str, object]] = None) -> str:
    """The ``packages`` key a dependency value refers to.

    pnpm 5 keys look like ``/name/1.0.0``, pnpm 6 like ``/name@1.0.0(peer@2.0.0)``
    and pnpm 9 drop the leading slash. When ``packages`` is given, the first
    style present there wins; otherwise the pnpm 5 form is returned.
    """
    # A slash before any peer suffix means the value is already a package path.
    if "/" in version.split("(", 1)[0]:
        return version
    candidates = (f"/{name}/{version}", f"/{name}@{version}", f"{name}@{version}")
    if packages is not None:
        for candidate in candidates:
            if candidate in packages:
                return candidate
    return candidates[0]


class IntegrityContext:
    """Caches integrity maps for one lockfile during one orchestrator run.

    Packages reachable from several projects are hashed once. Create a new
    context for every run so a changed lockfile is never served stale data.
    """

    def __init__(self, shrinkwrap: PnpmShrinkwrapFile) -> None:
        self.shrinkwrap = shrinkwrap
        self._package_maps: Dict[str, Dict[str, str]] = {}

    def integrity_for_package(self, specifier: str, optional: bool) -> Dict[str, str]:
        """Integrity entries for a package and everything it depends on."""
        cached = self._package_maps.get(specifier)
        if cached is not None:
            return cached

        integrity_map: Dict[str, str] = {}
        self._package_maps[specifier] = integrity_map

        entry = self.shrinkwrap.packages.get(specifier)
        if not isinstance(entry, dict):
            if not optional:
                # Stays robust against missing entries while never matching a real record.
                integrity_map[specifier] = MISSING_ENTRY
            return integrity_map

        self_integrity = (entry.get("resolution") or {}).get("integrity")
        if not self_integrity:
            # Git and tarball dependencies carry no integrity; hash the entry instead.
            self_integrity = f"{specifier}:{_digest(entry)}:"
        integrity_map[specifier] = self_integrity

        self._add_integrities(integrity_map, (entry.get("dependencies") or {}).items(), optional=False)
        self._add_integrities(integrity_map, (entry.get("optionalDependencies") or {}).items(), optional=True)
        return integrity_map

    def _add_integrities(
        self,
        integrity_map: Dict[str, str],
        dependencies: Iterable[Tuple[str, object]],
        optional: bool,
    ) -> None:
        for name, version in dependencies:
            version = dependency_version(version)
            if "link:" in version or is_temp_project_name(name):
                continue
            specifier = package_id(name, version, self.shrinkwrap.packages)
            if specifier in integrity_map:
                continue
            integrity_map.update(self.integrity_for_package(specifier, optional))

    def integrity_for_importer(self, importer_key: str) -> Optional[Dict[str, str]]:
        """Integrity map of a workspace project, or None if it has no importer entry."""
        importer = self.shrinkwrap.get_importer(importer_key)
        if importer is None:
            return None
        integrity_map: Dict[str, str] = {importer_key: f"{importer_key}:{_digest(importer)}:"}
        for section, optional in (
            ("dependencies", False),
            ("devDependencies", False),
            ("optionalDependencies", True),
        ):
            self._add_integrities(integrity_map, (importer.get(section) or {}).items(), optional)
        return integrity_map

    def integrity_for_temp_project(self, temp_project_name: str) -> Optional[Dict[str, str]]:
        """Integrity map of a tree-style project, from its temp package entry."""
        key = self.shrinkwrap.get_temp_project_dependency_key(temp_project_name)
        if not key:
            return None
        entry = self.shrinkwrap.packages.get(key)
        if not isinstance(entry, dict):
            return None
        integrity_map: Dict[str, str] = {}
        self._add_integrities(integrity_map, (entry.get("dependencies") or {}).items(), optional=False)
        self._add_integrities(integrity_map, (entry.get("optionalDependencies") or {}).items(), optional=True)
        return integrity_map

    def integrity_for_project(self, project: Project, workspace_root: str) -> Optional[Dict[str, str]]:
        if self.shrinkwrap.is_workspace_compatible:
            return self.integrity_for_importer(importer_key_for(workspace_root, project.folder))
        return self.integrity_for_temp_project(project.temp_project_name)


def project_shrinkwrap_path(project: Project) -> str:
    return os.path.join(project.folder, Constants.PROJECT_TEMP_FOLDER, Constants.PROJECT_SHRINKWRAP_DEPS_FILE)


def update_project_shrinkwrap(
    project: Project, context: IntegrityContext, workspace_root: str
) -> bool:
    """Write or delete ``<project>/.monolink/temp/shrinkwrap-deps.json``.

    Returns:
        True if the file on disk changed.
    """
    path = project_shrinkwrap_path(project)
    integrity_map = context.integrity_for_project(project, workspace_root)
    if integrity_map is None:
        existed = os.path.exists(path)
        delete_file(path)
        return existed
    content = json.dumps(dict(sorted(integrity_map.items())), indent=2) + "\n"
    changed = write_text_if_changed(path, content)
    if changed:
        logger.debug("Updated %s", path)
    return changed


def load_project_shrinkwrap(project: Project) -> Optional[Mapping[str, str]]:
    try:
        with open(project_shrinkwrap_path(project), "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
