"""Builds each project's ``node_modules`` folder out of symlinks.

The package manager installs every project's dependencies once, under the
shared temp folder. Linking then gives each project a ``node_modules``
folder whose entries point either at sibling projects in the repo or at
the packages installed in the temp folder.
"""

from __future__ import annotations

import io
import json
import logging
import os
import tarfile
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Sequence

from monolink.common.filesystem import (
    LinkKind,
    create_link,
    delete_file,
    delete_path,
    ensure_folder,
    write_json,
)
from monolink.common.logging_utils import Timer, extra_context, is_debug_enabled
from monolink.config import RepoConfiguration
from monolink.constants import Constants, PackageManagers
from monolink.errors import MonolinkError
from monolink.graph import (
    PackageDependency,
    PackageDependencyKind,
    PackageLookup,
    VirtualPackageNode,
    dependencies_from_package_json,
    load_installed_tree,
)
from monolink.project import Project
from monolink.shrinkwrap.integrity import IntegrityContext, update_project_shrinkwrap
from monolink.versioning import satisfies

logger = logging.getLogger(__name__)


def missing_dependency_message(dependency_name: str, consumer_name: str) -> str:
    return (
        f'The dependency "{dependency_name}" needed by "{consumer_name}" was not found in the '
        f'common folder -- do you need to run "{Constants.TOOL_PACKAGE_NAME} install"?'
    )


@dataclass
class _LinkWorkItem:
    """One pending node of the breadth-first walk.

    Attributes:
        common_package: The installed package whose dependencies are visited.
        local_package: The virtual node those dependencies are placed under.
        cyclic_subtree_root: When set, resolution may not climb above this node.
    """

    common_package: VirtualPackageNode
    local_package: VirtualPackageNode
    cyclic_subtree_root: Optional[VirtualPackageNode]


class LinkManager:
    """Creates symlinked ``node_modules`` folders for every project.

    Args:
        config: Repository configuration.
        projects: All projects in the repo.
        integrity_context: When given with a pnpm lockfile, each project's
            ``shrinkwrap-deps.json`` is refreshed while linking.
        local_link_overrides_cyclic: Link a ``monolinkDependencies`` entry
            from source even when the project lists it as cyclic.
    """

    def __init__(
        self,
        config: RepoConfiguration,
        projects: Sequence[Project],
        integrity_context: Optional[IntegrityContext] = None,
        local_link_overrides_cyclic: bool = False,
    ) -> None:
        self.config = config
        self.projects = list(projects)
        self.integrity_context = integrity_context
        self.local_link_overrides_cyclic = local_link_overrides_cyclic
        self._projects_by_name: Dict[str, Project] = {project.name: project for project in self.projects}

    @property
    def last_link_flag_path(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.LAST_LINK_FLAG)

    def create_symlinks_for_projects(self, force: bool = False) -> bool:
        """Link every project, unless the last run already did and ``force`` is False.

        Returns:
            True if linking ran.
        """
        if not force and os.path.exists(self.last_link_flag_path):
            logger.info("Skipping linking -- everything is already up to date.")
            return False

        delete_file(self.last_link_flag_path)
        logger.info("Linking projects together...")
        with Timer() as t:
            if self.config.workspaces_enabled:
                # pnpm links workspace projects itself.
                self._update_integrity_files()
            elif self.config.package_manager == PackageManagers.PNPM:
                for project in self.projects:
                    self._link_project_pnpm(project)
                self._update_integrity_files()
            else:
                common_root = load_installed_tree(self.config.temp_folder)
                lookup = PackageLookup()
                lookup.load_tree(common_root)
                for project in self.projects:
                    self._link_project_npm(project, common_root, lookup)

        write_json(self.last_link_flag_path, {})
        logger.info("Finished creating symlinks in %.2f seconds", t.duration_ms() / 1000.0)
        return True

    def _update_integrity_files(self) -> None:
        if self.integrity_context is None:
            return
        for project in self.projects:
            update_project_shrinkwrap(project, self.integrity_context, self.config.temp_folder)

    def _should_link_locally(
        self,
        project: Project,
        dependency: PackageDependency,
        local_project: Project,
        cyclic_subtree_root: Optional[VirtualPackageNode],
        consumer_name: str,
    ) -> bool:
        """Decide whether ``dependency`` links straight to a sibling's source folder."""
        if cyclic_subtree_root is not None:
            return False
        if project.is_cyclic_dependency(dependency.name):
            return self.local_link_overrides_cyclic and dependency.kind == PackageDependencyKind.LOCAL_LINK
        if dependency.kind == PackageDependencyKind.LOCAL_LINK:
            return True
        if not satisfies(local_project.version, dependency.version_range):
            logger.warning(
                'Will not locally link %s for %s because the requested version "%s" is '
                "incompatible with the local version %s",
                dependency.name,
                consumer_name,
                dependency.version_range,
                local_project.version,
            )
            return False
        return True

    @staticmethod
    def _place_local_link(parent: VirtualPackageNode, local_project: Project) -> None:
        resolution = parent.resolve_or_create(local_project.name)
        if resolution.found is not None and resolution.found.version == local_project.version:
            return
        parent_for_create = resolution.parent_for_create
        if parent_for_create is None:
            raise MonolinkError(
                f'Cannot place "{local_project.name}" under "{parent.name}": '
                f"a different version is already linked there"
            )
        node = VirtualPackageNode(
            local_project.name,
            local_project.version,
            os.path.join(parent_for_create.folder_path, Constants.NODE_MODULES, local_project.name),
            # A sibling's own node_modules already resolves its dependencies.
            [],
            local_project.folder,
        )
        parent_for_create.add_child(node)

    def build_npm_project_tree(
        self, project: Project, common_root: VirtualPackageNode, lookup: PackageLookup
    ) -> VirtualPackageNode:
        """Compute the virtual ``node_modules`` tree of one project.

        The project's temp package is located in the installed tree and its
        dependencies are visited breadth first. Each dependency becomes a
        local link to a sibling project or a link into the shared install.

        Raises:
            MonolinkError: The temp package or a required dependency is not installed.
        """
        common_package = common_root.get_child_by_name(project.temp_project_name)
        if common_package is None:
            raise MonolinkError(
                f'Unable to find a top-level package "{project.temp_project_name}" in '
                f'{self.config.temp_folder} -- do you need to run "{Constants.TOOL_PACKAGE_NAME} install"?'
            )

        root = VirtualPackageNode(project.name, project.version, project.folder)
        queue: Deque[_LinkWorkItem] = deque([_LinkWorkItem(common_package, root, None)])
        while queue:
            item = queue.popleft()
            local_package = item.local_package
            for dependency in item.common_package.dependencies:
                starting_cyclic_subtree = False
                local_project = self._projects_by_name.get(dependency.name)
                if local_project is not None:
                    if self._should_link_locally(
                        project, dependency, local_project, item.cyclic_subtree_root, local_package.name
                    ):
                        self._place_local_link(local_package, local_project)
                        continue
                    starting_cyclic_subtree = (
                        item.cyclic_subtree_root is None and project.is_cyclic_dependency(dependency.name)
                    )

                common_dependency = item.common_package.resolve(dependency.name)
                if common_dependency is None:
                    if dependency.kind == PackageDependencyKind.OPTIONAL:
                        logger.warning("Skipping optional dependency: %s", dependency.name)
                        continue
                    raise MonolinkError(missing_dependency_message(dependency.name, local_package.name))

                # Inside a cyclic subtree nothing above its root may be reused.
                resolution = local_package.resolve_or_create(dependency.name, item.cyclic_subtree_root)
                if resolution.found is not None and resolution.found.version == common_dependency.version:
                    continue
                parent_for_create = resolution.parent_for_create
                if parent_for_create is None:
                    raise MonolinkError(
                        f'Cannot place "{common_dependency.name_and_version}" under "{local_package.name}": '
                        f"a different version is already linked there"
                    )

                installed = lookup.get_package(common_dependency.name_and_version)
                if installed is None:
                    raise MonolinkError(
                        f'The {common_dependency.name_and_version} package was not found in the common folder'
                    )
                node = VirtualPackageNode(
                    common_dependency.name,
                    common_dependency.version,
                    os.path.join(parent_for_create.folder_path, Constants.NODE_MODULES, common_dependency.name),
                    common_dependency.dependencies,
                    installed.folder_path,
                )
                parent_for_create.add_child(node)
                queue.append(
                    _LinkWorkItem(
                        common_dependency,
                        node,
                        node if starting_cyclic_subtree else item.cyclic_subtree_root,
                    )
                )
        return root

    def _link_project_npm(
        self, project: Project, common_root: VirtualPackageNode, lookup: PackageLookup
    ) -> None:
        root = self.build_npm_project_tree(project, common_root, lookup)
        if is_debug_enabled(logger):
            logger.debug("Virtual tree for %s:\n%s", project.name, root.print_tree())
        self._materialize_project(root, os.path.join(self.config.temp_folder, Constants.NODE_MODULES))

    def build_pnpm_project_tree(self, project: Project) -> VirtualPackageNode:
        """Compute the ``node_modules`` entries of one project under a pnpm tree install.

        pnpm places each package's dependencies next to it inside its
        virtual store folder, so every dependency of the temp package is a
        sibling of the temp package's real folder and is linked directly.
        """
        temp_package_folder = self._installed_temp_package_folder(project)
        container = os.path.dirname(temp_package_folder)
        if "/" in project.temp_project_name:
            container = os.path.dirname(container)

        manifest = self.read_temp_project_manifest(project, temp_package_folder)
        root = VirtualPackageNode(project.name, project.version, project.folder)
        for dependency in dependencies_from_package_json(manifest):
            local_project = self._projects_by_name.get(dependency.name)
            if local_project is not None and self._should_link_locally(
                project, dependency, local_project, None, project.name
            ):
                self._place_local_link(root, local_project)
                continue

            dependency_folder = os.path.join(container, dependency.name)
            if not os.path.exists(dependency_folder):
                if dependency.kind == PackageDependencyKind.OPTIONAL:
                    logger.warning("Skipping optional dependency: %s", dependency.name)
                    continue
                raise MonolinkError(missing_dependency_message(dependency.name, project.name))

            target = os.path.realpath(dependency_folder)
            version = str((_read_json(os.path.join(target, Constants.PACKAGE_JSON_FILE)) or {}).get("version", ""))
            root.add_child(
                VirtualPackageNode(
                    dependency.name,
                    version,
                    os.path.join(project.folder, Constants.NODE_MODULES, dependency.name),
                    None,
                    target,
                )
            )
        return root

    def _link_project_pnpm(self, project: Project) -> None:
        root = self.build_pnpm_project_tree(project)
        temp_package_folder = self._installed_temp_package_folder(project)
        self._materialize_project(root, os.path.join(temp_package_folder, Constants.NODE_MODULES))

    def _installed_temp_package_folder(self, project: Project) -> str:
        path = os.path.join(self.config.temp_folder, Constants.NODE_MODULES, project.temp_project_name)
        if not os.path.exists(path):
            raise MonolinkError(
                f'Unable to find a top-level package "{project.temp_project_name}" in '
                f'{self.config.temp_folder} -- do you need to run "{Constants.TOOL_PACKAGE_NAME} install"?'
            )
        return os.path.realpath(path)

    def read_temp_project_manifest(self, project: Project, installed_folder: str) -> Dict[str, Any]:
        """Read the temp package manifest, falling back to its tarball."""
        manifest = _read_json(os.path.join(installed_folder, Constants.PACKAGE_JSON_FILE))
        if manifest is not None:
            return manifest
        tarball = os.path.join(
            self.config.temp_folder, Constants.TEMP_PROJECTS_FOLDER, f"{project.unscoped_temp_name}.tgz"
        )
        try:
            with tarfile.open(tarball, "r:gz") as archive:
                member = archive.extractfile("package/" + Constants.PACKAGE_JSON_FILE)
                if member is None:
                    raise KeyError(Constants.PACKAGE_JSON_FILE)
                return json.load(io.TextIOWrapper(member, encoding="utf-8"))
        except (OSError, KeyError, tarfile.TarError, ValueError) as exc:
            raise MonolinkError(f"Unable to read the manifest of {project.temp_project_name}: {exc}") from exc

    def _materialize_project(self, root: VirtualPackageNode, bin_source_modules: str) -> None:
        """Replace the project's ``node_modules`` with the links described by ``root``."""
        node_modules = os.path.join(root.folder_path, Constants.NODE_MODULES)
        delete_path(node_modules)
        ensure_folder(node_modules)
        for child in root.children:
            self._materialize_node(child)

        if root.children:
            bin_source = os.path.join(bin_source_modules, Constants.BIN_FOLDER)
            if os.path.isdir(bin_source):
                create_link(
                    LinkKind.DIRECTORY,
                    os.path.realpath(bin_source),
                    os.path.join(node_modules, Constants.BIN_FOLDER),
                    self.config.absolute_symlinks,
                )
        logger.debug("Linked %s", root.name)

    def _materialize_node(self, node: VirtualPackageNode) -> None:
        target = node.symlink_target_folder_path
        if target is None:
            raise MonolinkError(f'The package "{node.name_and_version}" has no link target')
        ensure_folder(os.path.dirname(node.folder_path))

        if not node.children:
            create_link(LinkKind.DIRECTORY, target, node.folder_path, self.config.absolute_symlinks)
            return

        # The node's own node_modules must hold the nested children, so the
        # package folder is a real directory of per-entry links.
        ensure_folder(node.folder_path)
        for entry in sorted(os.listdir(target)):
            if entry.lower() == Constants.NODE_MODULES:
                continue
            entry_target = os.path.join(target, entry)
            kind = LinkKind.DIRECTORY if os.path.isdir(entry_target) else LinkKind.FILE
            if os.path.islink(entry_target):
                entry_target = os.path.realpath(entry_target)
            create_link(kind, entry_target, os.path.join(node.folder_path, entry), self.config.absolute_symlinks)

        if is_debug_enabled(logger):
            logger.debug(
                "Materialized package folder",
                extra=extra_context(
                    event="materialize",
                    component="link_manager",
                    action="expand",
                    target=node.folder_path,
                    children=len(node.children),
                ),
            )
        for child in node.children:
            self._materialize_node(child)


def _read_json(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    return data if isinstance(data, dict) else None
