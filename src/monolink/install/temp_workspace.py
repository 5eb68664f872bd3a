"""Generates the package manager's input under the shared temp folder.

Two layouts are supported:

* tree style (npm, yarn, and pnpm without workspaces): each project is
  represented by a synthetic ``@monolink-temp/<name>`` package, packed as a
  tarball under ``projects/`` and depended on by a common ``package.json``;
* pnpm workspaces: a ``pnpm-workspace.yaml`` lists the real project folders.

Both layouts check the current lockfile against the projects while they
are generated and report whether it still satisfies every request.
"""

from __future__ import annotations

import gzip
import io
import json
import logging
import os
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import yaml

from monolink.common.filesystem import (
    delete_file,
    ensure_folder,
    write_json,
    write_text_if_changed,
)
from monolink.config import RepoConfiguration
from monolink.constants import Constants
from monolink.errors import MalformedSpecifier, MonolinkError
from monolink.manifest import SetDependencyVersion, apply_dependency_changes, save_if_modified
from monolink.project import DependencyType, Project
from monolink.shrinkwrap.base import ShrinkwrapFile, find_orphaned_projects, importer_key_for
from monolink.shrinkwrap.pnpm import PnpmShrinkwrapFile
from monolink.specifier import DependencySpecifier, DependencySpecifierType
from monolink.version_reconciler import PreferredVersionTable
from monolink.versioning import satisfies

logger = logging.getLogger(__name__)

WORKSPACE_ANY_VERSION = Constants.WORKSPACE_PROTOCOL + "*"
_ROOT_IMPORTER = "."


@dataclass
class TempWorkspaceResult:
    """Outcome of preparing the temp folder.

    Attributes:
        shrinkwrap_is_up_to_date: Whether the lockfile satisfies every request.
        projects: The projects, including any manifests rewritten on the way.
        warnings: Reasons the lockfile needs updating, in discovery order.
    """

    shrinkwrap_is_up_to_date: bool
    projects: List[Project]
    warnings: List[str] = field(default_factory=list)


def parse_project_dependency(project: Project, name: str, version: str) -> DependencySpecifier:
    """Parse a manifest entry, naming the project on failure."""
    try:
        return DependencySpecifier.parse(name, version)
    except MalformedSpecifier as exc:
        raise MalformedSpecifier(name, version, f'declared by "{project.name}"') from exc


def create_deterministic_tarball(package_json: Dict[str, Any]) -> bytes:
    """Pack a manifest as ``package/package.json`` in a reproducible tar.gz.

    Timestamps and ownership are zeroed so identical manifests always give
    identical bytes.
    """
    content = (json.dumps(package_json, indent=2) + "\n").encode("utf-8")
    tar_buffer = io.BytesIO()
    with tarfile.open(fileobj=tar_buffer, mode="w", format=tarfile.USTAR_FORMAT) as archive:
        info = tarfile.TarInfo("package/" + Constants.PACKAGE_JSON_FILE)
        info.size = len(content)
        info.mtime = 0
        info.mode = 0o644
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        archive.addfile(info, io.BytesIO(content))

    gz_buffer = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=gz_buffer, mtime=0) as gz:
        gz.write(tar_buffer.getvalue())
    return gz_buffer.getvalue()


class TempWorkspace(ABC):
    """Shared behavior of both temp folder layouts."""

    def __init__(self, config: RepoConfiguration) -> None:
        self.config = config
        self.warnings: List[str] = []

    def _stale(self, message: str, *args: Any) -> None:
        text = message % args if args else message
        logger.info(text)
        self.warnings.append(text)

    @property
    def common_package_json_path(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.PACKAGE_JSON_FILE)

    def _local_projects(self, projects: Sequence[Project]) -> Dict[str, Project]:
        return {project.name: project for project in projects}

    @abstractmethod
    def prepare(
        self,
        shrinkwrap: Optional[ShrinkwrapFile],
        preferred_versions: PreferredVersionTable,
        projects: Sequence[Project],
        allow_shrinkwrap_updates: bool,
    ) -> TempWorkspaceResult:
        """Write the package manager input and check the lockfile against it."""

    def input_files(self, projects: Sequence[Project]) -> List[str]:
        """Files whose modification makes a previous install suspect."""
        return [
            self.config.temp_shrinkwrap_path,
            self.config.common_versions_path,
            self.common_package_json_path,
        ]


class TreeTempWorkspace(TempWorkspace):
    """One tarball per project plus a common package.json depending on all of them."""

    @property
    def projects_folder(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.TEMP_PROJECTS_FOLDER)

    def tarball_path(self, project: Project) -> str:
        return os.path.join(self.projects_folder, f"{project.unscoped_temp_name}.tgz")

    def build_temp_manifest(
        self,
        project: Project,
        local_projects: Dict[str, Project],
        shrinkwrap: Optional[ShrinkwrapFile],
    ) -> Dict[str, Any]:
        """The synthetic package standing in for ``project`` during install.

        Regular and dev dependencies are merged with dev winning. Siblings
        that will be linked from source are listed under the local link
        field so the package manager never downloads them.
        """
        dependencies: Dict[str, str] = {}
        local_links: Dict[str, str] = {}
        merged: Dict[str, str] = {}
        for dependency in project.dependencies_of(DependencyType.REGULAR, DependencyType.DEV):
            merged[dependency.name] = dependency.version

        for name, version in merged.items():
            specifier = parse_project_dependency(project, name, version)
            local_project = local_projects.get(name)
            if (
                local_project is not None
                and not project.is_cyclic_dependency(name)
                and _local_version_satisfies(local_project, specifier)
            ):
                local_links[name] = version
                continue
            dependencies[name] = version
            if shrinkwrap is not None and not shrinkwrap.try_ensure_compatible_dependency(
                specifier, project.temp_project_name
            ):
                self._stale('Updating the lockfile because "%s" requests %s', project.name, specifier)

        optional: Dict[str, str] = {}
        for dependency in project.dependencies_of(DependencyType.OPTIONAL):
            specifier = parse_project_dependency(project, dependency.name, dependency.version)
            optional[dependency.name] = dependency.version
            if shrinkwrap is not None and not shrinkwrap.try_ensure_compatible_dependency(
                specifier, project.temp_project_name
            ):
                self._stale('Updating the lockfile because "%s" requests %s', project.name, specifier)

        manifest: Dict[str, Any] = {
            "name": project.temp_project_name,
            "version": Constants.PLACEHOLDER_VERSION,
            "private": True,
            "dependencies": dict(sorted(dependencies.items())),
        }
        if optional:
            manifest["optionalDependencies"] = dict(sorted(optional.items()))
        if local_links:
            manifest[Constants.LOCAL_LINK_DEPENDENCIES_FIELD] = dict(sorted(local_links.items()))
        return manifest

    def _write_project_tarball(self, project: Project, manifest: Dict[str, Any]) -> None:
        descriptor_path = os.path.join(self.projects_folder, project.unscoped_temp_name, Constants.PACKAGE_JSON_FILE)
        tarball_path = self.tarball_path(project)
        changed = write_json(descriptor_path, manifest, only_if_changed=True)
        if changed or not os.path.exists(tarball_path):
            with open(tarball_path, "wb") as fh:
                fh.write(create_deterministic_tarball(manifest))
            logger.debug("Wrote %s", tarball_path)

    def prepare(
        self,
        shrinkwrap: Optional[ShrinkwrapFile],
        preferred_versions: PreferredVersionTable,
        projects: Sequence[Project],
        allow_shrinkwrap_updates: bool,
    ) -> TempWorkspaceResult:
        self.warnings = []
        up_to_date = shrinkwrap is not None
        if shrinkwrap is None:
            self._stale("No lockfile was found; a new one will be generated")

        if shrinkwrap is not None:
            for orphan in find_orphaned_projects(shrinkwrap, projects):
                self._stale('The lockfile references "%s", which no longer exists in the repo', orphan)
            known_temp_names = set(shrinkwrap.get_temp_project_names())
            for project in projects:
                if project.temp_project_name not in known_temp_names:
                    self._stale('The lockfile is missing "%s"', project.temp_project_name)

        ensure_folder(self.projects_folder)
        local_projects = self._local_projects(projects)
        common_dependencies: Dict[str, str] = {}
        for project in projects:
            manifest = self.build_temp_manifest(project, local_projects, shrinkwrap)
            self._write_project_tarball(project, manifest)
            common_dependencies[project.temp_project_name] = (
                f"file:./{Constants.TEMP_PROJECTS_FOLDER}/{project.unscoped_temp_name}.tgz"
            )

        expected_tarballs = {os.path.basename(self.tarball_path(project)) for project in projects}
        for entry in os.listdir(self.projects_folder):
            if entry.endswith(".tgz") and entry not in expected_tarballs:
                delete_file(os.path.join(self.projects_folder, entry))

        for name, version in preferred_versions.items():
            common_dependencies.setdefault(name, version)
            if shrinkwrap is not None and not shrinkwrap.has_compatible_top_level_dependency(
                DependencySpecifier.parse(name, version)
            ):
                self._stale('Updating the lockfile because the preferred version %s@%s is not installed', name, version)

        write_json(
            self.common_package_json_path,
            {
                "name": Constants.COMMON_PACKAGE_NAME,
                "version": Constants.PLACEHOLDER_VERSION,
                "private": True,
                "description": "Temporary file generated by monolink",
                "dependencies": dict(sorted(common_dependencies.items())),
            },
            only_if_changed=True,
        )

        if self.warnings:
            up_to_date = False
        return TempWorkspaceResult(up_to_date, list(projects), list(self.warnings))

    def input_files(self, projects: Sequence[Project]) -> List[str]:
        return super().input_files(projects) + [self.tarball_path(project) for project in projects]


class PnpmWorkspaceTempWorkspace(TempWorkspace):
    """A ``pnpm-workspace.yaml`` listing the real project folders."""

    @property
    def workspace_file_path(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.PNPM_WORKSPACE_FILE)

    def _normalize_local_references(
        self,
        project: Project,
        local_projects: Dict[str, Project],
        allow_shrinkwrap_updates: bool,
    ) -> Project:
        """Rewrite local sibling references to the ``workspace:`` protocol.

        Raises:
            MonolinkError: A sibling's version does not satisfy the request, or
                a rewrite is needed but updates are not allowed.
        """
        changes: List[SetDependencyVersion] = []
        for dependency in project.dependencies:
            if dependency.dependency_type == DependencyType.PEER:
                continue
            local_project = local_projects.get(dependency.name)
            if local_project is None or project.is_cyclic_dependency(dependency.name):
                continue
            specifier = parse_project_dependency(project, dependency.name, dependency.version)
            if specifier.specifier_type == DependencySpecifierType.WORKSPACE:
                if not _local_version_satisfies(local_project, specifier):
                    raise MonolinkError(
                        f'"{project.name}" depends on "{dependency.name}@{dependency.version}", but the '
                        f"local version is {local_project.version}"
                    )
                continue
            if not specifier.is_semver:
                continue
            if not satisfies(local_project.version, specifier.version_specifier):
                raise MonolinkError(
                    f'"{project.name}" depends on "{dependency.name}@{dependency.version}", which the '
                    f"local version {local_project.version} does not satisfy. Add it to the "
                    "project's cyclicDependencyProjects to install it from the registry."
                )
            if not allow_shrinkwrap_updates:
                raise MonolinkError(
                    f'"{project.name}" references the local project "{dependency.name}" without the '
                    f'workspace protocol. Run "{Constants.TOOL_PACKAGE_NAME} update" to fix it.'
                )
            changes.append(
                SetDependencyVersion(project.name, dependency.name, WORKSPACE_ANY_VERSION, dependency.dependency_type)
            )

        if not changes:
            return project
        update = apply_dependency_changes(project, changes)
        save_if_modified(update)
        return update.project

    def prepare(
        self,
        shrinkwrap: Optional[ShrinkwrapFile],
        preferred_versions: PreferredVersionTable,
        projects: Sequence[Project],
        allow_shrinkwrap_updates: bool,
    ) -> TempWorkspaceResult:
        self.warnings = []
        workspace_root = self.config.temp_folder
        pnpm_shrinkwrap: Optional[PnpmShrinkwrapFile] = None
        if isinstance(shrinkwrap, PnpmShrinkwrapFile) and shrinkwrap.is_workspace_compatible:
            pnpm_shrinkwrap = shrinkwrap
        elif shrinkwrap is not None:
            self._stale("The lockfile was not generated for a workspace; a new one will be generated")
        else:
            self._stale("No lockfile was found; a new one will be generated")

        if pnpm_shrinkwrap is not None:
            for orphan in find_orphaned_projects(pnpm_shrinkwrap, projects, workspace_root):
                self._stale('The lockfile references "%s", which is no longer a project folder', orphan)

        local_projects = self._local_projects(projects)
        updated_projects: List[Project] = []
        for project in projects:
            project = self._normalize_local_references(project, local_projects, allow_shrinkwrap_updates)
            updated_projects.append(project)
            if pnpm_shrinkwrap is None:
                continue
            importer_key = importer_key_for(workspace_root, project.folder)
            for dependency in project.dependencies:
                if dependency.dependency_type == DependencyType.PEER:
                    continue
                specifier = parse_project_dependency(project, dependency.name, dependency.version)
                if specifier.specifier_type == DependencySpecifierType.WORKSPACE:
                    continue
                if not pnpm_shrinkwrap.has_compatible_workspace_dependency(specifier, importer_key):
                    self._stale('Updating the lockfile because "%s" requests %s', project.name, specifier)
            if pnpm_shrinkwrap.is_workspace_project_modified(project, workspace_root):
                self._stale('The dependencies of "%s" changed since the lockfile was generated', project.name)

        root_dependencies: Dict[str, str] = {}
        for name, version in preferred_versions.items():
            root_dependencies[name] = version
            if pnpm_shrinkwrap is not None and not pnpm_shrinkwrap.has_compatible_workspace_dependency(
                DependencySpecifier.parse(name, version), _ROOT_IMPORTER
            ):
                self._stale('Updating the lockfile because the preferred version %s@%s is not installed', name, version)

        packages = sorted(
            os.path.relpath(project.folder, workspace_root).replace(os.sep, "/") for project in updated_projects
        )
        write_text_if_changed(
            self.workspace_file_path,
            yaml.safe_dump({"packages": packages}, default_flow_style=False, sort_keys=True),
        )
        write_json(
            self.common_package_json_path,
            {
                "name": Constants.COMMON_PACKAGE_NAME,
                "version": Constants.PLACEHOLDER_VERSION,
                "private": True,
                "description": "Temporary file generated by monolink",
                "dependencies": dict(sorted(root_dependencies.items())),
            },
            only_if_changed=True,
        )

        return TempWorkspaceResult(not self.warnings, updated_projects, list(self.warnings))

    def input_files(self, projects: Sequence[Project]) -> List[str]:
        files = super().input_files(projects) + [self.workspace_file_path]
        for project in projects:
            files.append(project.manifest_path)
            files.append(os.path.join(project.folder, Constants.NODE_MODULES))
        return files


def _local_version_satisfies(local_project: Project, specifier: DependencySpecifier) -> bool:
    if specifier.specifier_type == DependencySpecifierType.WORKSPACE:
        # "workspace:*", "workspace:^" and "workspace:~" accept whatever is local.
        if specifier.version_specifier in ("", "*", "^", "~"):
            return True
        return satisfies(local_project.version, specifier.version_specifier)
    if not specifier.is_semver:
        return False
    return satisfies(local_project.version, specifier.version_specifier)


def create_temp_workspace(config: RepoConfiguration) -> TempWorkspace:
    if config.workspaces_enabled:
        return PnpmWorkspaceTempWorkspace(config)
    return TreeTempWorkspace(config)
