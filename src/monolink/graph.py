"""In-memory package trees used while computing symlinks.

The same node type models two trees: the packages the package manager
physically installed under the shared temp folder, and the virtual
``node_modules`` tree being built for one project. Lookups follow Node's
nested resolution rules, where the nearest ancestor's ``node_modules``
wins.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional

from monolink.constants import Constants
from monolink.errors import AlreadyParentedError, DuplicateChildError

logger = logging.getLogger(__name__)


class PackageDependencyKind(Enum):
    """How a package refers to one of its dependencies."""

    REGULAR = "regular"
    OPTIONAL = "optional"
    # A sibling project that should always be linked from its source folder.
    LOCAL_LINK = "localLink"


@dataclass(frozen=True)
class PackageDependency:
    name: str
    version_range: str
    kind: PackageDependencyKind


@dataclass
class ResolveOrCreateResult:
    """Outcome of :meth:`VirtualPackageNode.resolve_or_create`.

    When nothing is found, ``parent_for_create`` is the highest node visited.
    When a match is found, it is the highest visited node below the match,
    which is where a different version could shadow it; None if the match
    is a direct child of the starting node.
    """

    found: Optional["VirtualPackageNode"]
    parent_for_create: Optional["VirtualPackageNode"]


class VirtualPackageNode:
    """One package in a package tree.

    Attributes:
        name: Package name.
        version: Resolved version.
        folder_path: Where the package lives (or will be linked) on disk.
        dependencies: Declared dependencies used to continue the traversal.
        symlink_target_folder_path: Where the package contents physically
            live; None for packages that are materialized in place.
    """

    def __init__(
        self,
        name: str,
        version: str,
        folder_path: str,
        dependencies: Optional[List[PackageDependency]] = None,
        symlink_target_folder_path: Optional[str] = None,
    ) -> None:
        self.name = name
        self.version = version
        self.folder_path = folder_path
        self.dependencies: List[PackageDependency] = list(dependencies or [])
        self.symlink_target_folder_path = symlink_target_folder_path
        self.children: List[VirtualPackageNode] = []
        self.parent: Optional[VirtualPackageNode] = None
        self._children_by_name: Dict[str, VirtualPackageNode] = {}

    def __repr__(self) -> str:
        return f"VirtualPackageNode({self.name!r}, {self.version!r}, {self.folder_path!r})"

    @property
    def name_and_version(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name

    def add_child(self, child: "VirtualPackageNode") -> None:
        """Attach ``child`` under this node.

        Raises:
            AlreadyParentedError: The child already belongs to another node.
            DuplicateChildError: A child with the same name is already present.
        """
        if child.parent is not None:
            raise AlreadyParentedError(
                f'Package "{child.name}" already has a parent "{child.parent.name}"'
            )
        if child.name in self._children_by_name:
            raise DuplicateChildError(
                f'Package "{self.name}" already has a child named "{child.name}"'
            )
        child.parent = self
        self.children.append(child)
        self._children_by_name[child.name] = child

    def get_child_by_name(self, name: str) -> Optional["VirtualPackageNode"]:
        return self._children_by_name.get(name)

    def ancestors(self) -> Iterator["VirtualPackageNode"]:
        """Yield this node followed by each parent up to the root."""
        current: Optional[VirtualPackageNode] = self
        while current is not None:
            yield current
            current = current.parent

    def resolve(self, name: str) -> Optional["VirtualPackageNode"]:
        """Find the package Node would load for ``require(name)`` from this package."""
        for ancestor in self.ancestors():
            found = ancestor.get_child_by_name(name)
            if found is not None:
                return found
        return None

    def resolve_or_create(
        self, name: str, cyclic_subtree_root: Optional["VirtualPackageNode"] = None
    ) -> ResolveOrCreateResult:
        """Find ``name`` as Node would, or report where a new node should go.

        The search climbs toward the root, stopping at ``cyclic_subtree_root``
        when given so nothing outside that subtree is reused. If nothing is
        found, the highest node visited is the creation point, which keeps
        the number of links to a minimum.
        """
        parent_for_create: Optional[VirtualPackageNode] = None
        for ancestor in self.ancestors():
            found = ancestor.get_child_by_name(name)
            if found is not None:
                return ResolveOrCreateResult(found=found, parent_for_create=parent_for_create)
            parent_for_create = ancestor
            if ancestor is cyclic_subtree_root:
                break
        return ResolveOrCreateResult(found=None, parent_for_create=parent_for_create)

    def walk(self) -> Iterator["VirtualPackageNode"]:
        """Depth-first iteration over this node and its descendants."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def print_tree(self, indent: str = "") -> str:
        lines = [f"{indent}{self.name_and_version}" + (
            f" -> {self.symlink_target_folder_path}" if self.symlink_target_folder_path else ""
        )]
        for child in self.children:
            lines.append(child.print_tree(indent + "  "))
        return "\n".join(lines)


class PackageLookup:
    """Index of installed packages by ``name@version``.

    The first package visited for a given key wins, so every virtual node
    for that key links to the same physical folder.
    """

    def __init__(self) -> None:
        self._packages: Dict[str, VirtualPackageNode] = {}

    def load_tree(self, root: VirtualPackageNode) -> None:
        for node in root.walk():
            self._packages.setdefault(node.name_and_version, node)

    def get_package(self, name_and_version: str) -> Optional[VirtualPackageNode]:
        return self._packages.get(name_and_version)


def dependencies_from_package_json(package_json: Mapping[str, Any]) -> List[PackageDependency]:
    """Collect the dependencies that installation actually materialized.

    Optional dependencies shadow regular ones of the same name. Entries of
    the local link field mark sibling projects.
    """
    dependencies: List[PackageDependency] = []
    seen = set()
    for name, version in (package_json.get("optionalDependencies") or {}).items():
        dependencies.append(PackageDependency(name, str(version), PackageDependencyKind.OPTIONAL))
        seen.add(name)
    for name, version in (package_json.get("dependencies") or {}).items():
        if name not in seen:
            dependencies.append(PackageDependency(name, str(version), PackageDependencyKind.REGULAR))
            seen.add(name)
    for name, version in (package_json.get(Constants.LOCAL_LINK_DEPENDENCIES_FIELD) or {}).items():
        if name not in seen:
            dependencies.append(PackageDependency(name, str(version), PackageDependencyKind.LOCAL_LINK))
    return dependencies


def _read_package_json(folder: str) -> Optional[Dict[str, Any]]:
    path = os.path.join(folder, Constants.PACKAGE_JSON_FILE)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def _iter_module_folders(node_modules: str) -> Iterator[str]:
    try:
        entries = sorted(os.listdir(node_modules))
    except FileNotFoundError:
        return
    for entry in entries:
        if entry.startswith("."):
            continue
        full_path = os.path.join(node_modules, entry)
        if entry.startswith("@") and os.path.isdir(full_path) and not os.path.islink(full_path):
            for scoped in sorted(os.listdir(full_path)):
                if not scoped.startswith("."):
                    yield os.path.join(full_path, scoped)
        else:
            yield full_path


def load_installed_tree(folder: str) -> VirtualPackageNode:
    """Read the package tree a package manager installed under ``folder``.

    Linked packages are recorded at their real path but not descended into.
    """
    package_json = _read_package_json(folder) or {}
    root = VirtualPackageNode(
        package_json.get("name", os.path.basename(folder)),
        str(package_json.get("version", "")),
        folder,
        dependencies_from_package_json(package_json),
    )

    worklist = [root]
    while worklist:
        parent = worklist.pop()
        for child_folder in _iter_module_folders(os.path.join(parent.folder_path, Constants.NODE_MODULES)):
            is_link = os.path.islink(child_folder)
            physical_folder = os.path.realpath(child_folder) if is_link else child_folder
            child_json = _read_package_json(physical_folder)
            if child_json is None or not child_json.get("name"):
                continue
            child = VirtualPackageNode(
                child_json["name"],
                str(child_json.get("version", "")),
                physical_folder,
                dependencies_from_package_json(child_json),
            )
            if parent.get_child_by_name(child.name) is not None:
                logger.debug("Ignoring duplicate installed package %s under %s", child.name, parent.folder_path)
                continue
            parent.add_child(child)
            if not is_link:
                worklist.append(child)
    return root
