"""pnpm-lock.yaml support, including workspace lockfiles.

A pnpm lockfile has top-level ``dependencies`` and ``specifiers`` maps, a
``packages`` map keyed by an encoded dependency path, and for workspaces an
``importers`` map keyed by each project's path relative to the workspace.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from monolink.common.logging_utils import Timer, extra_context, is_debug_enabled
from monolink.constants import PackageManagers
from monolink.errors import CorruptLockfile
from monolink.project import DependencyType, Project
from monolink.shrinkwrap.base import ShrinkwrapFile, importer_key_for, temp_project_names_from_keys
from monolink.specifier import DependencySpecifier, DependencySpecifierType
from monolink.versioning import is_valid_version, parse_version, satisfies

logger = logging.getLogger(__name__)

_SECTIONS = ("dependencies", "specifiers", "packages", "importers")
_WORKSPACE_ROOT_IMPORTER = "."

_SCHEME_RE = re.compile(r"^\w+:")
_PACKAGE_PATH_RE = re.compile(r"^[^/]*/((?:@[^/]+/)?[^/]+)/(.*)$")
_VERSION_PART_RE = re.compile(r"^([^/_]+)[/_]")
_URL_RE = re.compile(
    r"^(git@|@)?([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}(/|\+)([^/\\]+/?)*([^/\\]+)$", re.IGNORECASE
)
_PATH_V5_RE = re.compile(r"^([^/]*)/((?:@[^/]+/)?[^/@]+)/([^/_]+)(?:_(.+))?$")
_PATH_V6_RE = re.compile(r"^([^/]*)/((?:@[^/]+/)?[^/@]+)@([^(]+)((?:\(.+\))?)$")


@dataclass(frozen=True)
class PnpmDependencyPath:
    """A decoded ``packages`` key.

    Examples:
        ``/left-pad/1.0.0``
        ``registry.example.com/@scope/dep/1.4.0``
        ``/sinon-chai/2.8.0_chai@3.5.0+sinon@1.17.7``
        ``/react-dom@18.2.0(react@18.2.0)``
    """

    name: str
    version: str
    peers_suffix: str = ""
    registry_host: str = ""
    # "/" for ``/name/version_peers`` keys, "@" for ``/name@version(peers)`` keys
    separator: str = "/"

    @classmethod
    def decode(cls, dependency_path: str) -> Optional["PnpmDependencyPath"]:
        match = _PATH_V6_RE.match(dependency_path)
        if match:
            return cls(match.group(2), match.group(3), match.group(4) or "", match.group(1), "@")
        match = _PATH_V5_RE.match(dependency_path)
        if match:
            return cls(match.group(2), match.group(3), match.group(4) or "", match.group(1), "/")
        return None

    def encode(self) -> str:
        if self.separator == "@":
            return f"{self.registry_host}/{self.name}@{self.version}{self.peers_suffix}"
        suffix = f"_{self.peers_suffix}" if self.peers_suffix else ""
        return f"{self.registry_host}/{self.name}/{self.version}{suffix}"


def parse_pnpm_dependency_key(dependency_name: str, dependency_key: str) -> Optional[DependencySpecifier]:
    """Turn a lockfile dependency value into the specifier it resolved to.

    Returns None for values this engine does not interpret, such as
    ``file:`` or ``link:`` schemes. A path naming a different package than
    ``dependency_name`` is reported as an ``npm:`` alias.

    Examples:
        ``("isarray", "/isarray/2.0.1")`` gives ``isarray@2.0.1``.
        ``("dep", "path.pkgs.example.com/@scope/dep/1.4.0")`` gives an alias of ``@scope/dep@1.4.0``.
        ``("babel-jest", "23.6.0_babel-core@6.26.3")`` gives ``babel-jest@23.6.0``.
    """
    if not dependency_key:
        return None
    if _SCHEME_RE.match(dependency_key):
        return None

    v6_path = _PATH_V6_RE.match(dependency_key)
    if v6_path:
        parsed_name, version_part = v6_path.group(2), v6_path.group(3)
    else:
        # Peer suffixes such as "(@types/node@18.0.0)" may contain slashes of their own.
        head = dependency_key.split("(", 1)[0]
        package_match = _PACKAGE_PATH_RE.match(head)
        if package_match:
            parsed_name, install_path = package_match.group(1), package_match.group(2)
        else:
            parsed_name, install_path = dependency_name, head
        version_match = _VERSION_PART_RE.match(install_path)
        version_part = version_match.group(1) if version_match else install_path

    if not version_part:
        return None

    if not is_valid_version(version_part):
        if _URL_RE.match(dependency_key):
            return DependencySpecifier(dependency_name, dependency_key, DependencySpecifierType.REMOTE)
        return None

    if parsed_name == dependency_name:
        return DependencySpecifier(parsed_name, version_part, DependencySpecifierType.VERSION)
    return DependencySpecifier.parse(dependency_name, f"npm:{parsed_name}@{version_part}")


class PnpmShrinkwrapFile(ShrinkwrapFile):
    """A parsed pnpm-lock.yaml."""

    package_manager = PackageManagers.PNPM

    def __init__(self, shrinkwrap_json: Dict[str, Any]) -> None:
        super().__init__()
        self._shrinkwrap_json = shrinkwrap_json
        for section in _SECTIONS:
            if not isinstance(self._shrinkwrap_json.get(section), dict):
                self._shrinkwrap_json[section] = {}
        self.is_workspace_compatible = len(self.importers) > 0

    @classmethod
    def load(cls, path: str) -> Optional["PnpmShrinkwrapFile"]:
        """Load the file at ``path``; None if it does not exist.

        Raises:
            CorruptLockfile: The file exists but is not a YAML mapping.
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return None
        with Timer() as t:
            try:
                data = yaml.safe_load(content) or {}
                if not isinstance(data, dict):
                    raise ValueError("expected a mapping at the top level")
            except (yaml.YAMLError, ValueError) as exc:
                raise CorruptLockfile(path, exc) from exc
        if is_debug_enabled(logger):
            logger.debug(
                "Shrinkwrap loaded",
                extra=extra_context(
                    event="shrinkwrap_load",
                    component="shrinkwrap",
                    action="pnpm",
                    outcome="success",
                    duration_ms=t.duration_ms(),
                    target=path,
                ),
            )
        return cls(data)

    @property
    def dependencies(self) -> Dict[str, str]:
        return self._shrinkwrap_json["dependencies"]

    @property
    def specifiers(self) -> Dict[str, str]:
        return self._shrinkwrap_json["specifiers"]

    @property
    def packages(self) -> Dict[str, Dict[str, Any]]:
        return self._shrinkwrap_json["packages"]

    @property
    def importers(self) -> Dict[str, Dict[str, Any]]:
        return self._shrinkwrap_json["importers"]

    @property
    def registry(self) -> str:
        return str(self._shrinkwrap_json.get("registry") or "")

    def get_temp_project_names(self) -> List[str]:
        return temp_project_names_from_keys(self.dependencies.keys())

    def get_workspace_keys(self) -> List[str]:
        return sorted(key for key in self.importers if key != _WORKSPACE_ROOT_IMPORTER)

    def get_importer(self, importer_key: str) -> Optional[Dict[str, Any]]:
        importer = self.importers.get(importer_key)
        return importer if isinstance(importer, dict) else None

    @staticmethod
    def get_importer_key_by_path(workspace_root: str, project_folder: str) -> str:
        return importer_key_for(workspace_root, project_folder)

    def get_temp_project_dependency_key(self, temp_project_name: str) -> Optional[str]:
        """The ``packages`` key of a temp project.

        Example: ``@monolink-temp/app`` maps to ``file:projects/app.tgz``.
        """
        value = self.dependencies.get(temp_project_name)
        return str(value) if value else None

    def get_tarball_path(self, package_key: str) -> Optional[str]:
        entry = self.packages.get(package_key)
        if not entry:
            return None
        return (entry.get("resolution") or {}).get("tarball")

    def get_top_level_dependency_version(self, dependency_name: str) -> Optional[DependencySpecifier]:
        """Return the top-level version, e.g. ``2.1.113`` or ``file:projects/app.tgz``.

        Tarball entries carry a hash suffix after an underscore; the
        ``resolution.tarball`` field is used to strip it because file names
        may contain underscores themselves.
        """
        value = self.dependencies.get(dependency_name)
        if not value:
            return None
        value = str(value)
        tarball = self.get_tarball_path(value)
        if tarball and value.startswith(tarball):
            return DependencySpecifier.parse(dependency_name, tarball)
        underscore = value.find("_")
        if underscore >= 0:
            value = value[:underscore]
        return DependencySpecifier.parse(dependency_name, value)

    def _get_package_description(self, temp_project_dependency_key: str) -> Optional[Dict[str, Any]]:
        description = self.packages.get(temp_project_dependency_key)
        if not isinstance(description, dict) or not isinstance(description.get("dependencies"), dict):
            return None
        return description

    def _get_dependency_version(self, dependency_name: str, temp_project_name: str) -> Optional[DependencySpecifier]:
        key = self.get_temp_project_dependency_key(temp_project_name)
        if not key:
            raise KeyError(f"Cannot get dependency key for temp project: {temp_project_name}")
        description = self._get_package_description(key)
        if description is None or dependency_name not in description["dependencies"]:
            return None
        return self._parse_dependency_key(dependency_name, description["dependencies"][dependency_name])

    @staticmethod
    def _parse_dependency_key(dependency_name: str, dependency_key: Any) -> Optional[DependencySpecifier]:
        if not dependency_key:
            return None
        result = parse_pnpm_dependency_key(dependency_name, str(dependency_key))
        if result is None and not _SCHEME_RE.match(str(dependency_key)):
            raise ValueError(
                f'Cannot parse PNPM shrinkwrap version specifier: "{dependency_key}" for "{dependency_name}"'
            )
        return result

    def try_ensure_dependency_version(
        self, specifier: DependencySpecifier, consumer_key: str
    ) -> Optional[DependencySpecifier]:
        """Find the version directly linked for a temp project or workspace importer.

        pnpm reproduces links exactly as written, so the dependency must be
        linked from this consumer. If a temp project lacks it, the highest
        version another temp project uses that satisfies the range is written
        into this temp project's entry.
        """
        if consumer_key in self.importers:
            return self._get_workspace_dependency_version(specifier.package_name, consumer_key)

        package_name = specifier.package_name
        temp_key = self.get_temp_project_dependency_key(consumer_key)
        if not temp_key:
            return None
        description = self._get_package_description(temp_key)
        if description is None:
            return None

        if package_name in description["dependencies"]:
            return self._parse_dependency_key(package_name, description["dependencies"][package_name])

        if not specifier.version_specifier:
            return None

        latest: Optional[str] = None
        for other in self.get_temp_project_names():
            other_specifier = self._get_dependency_version(package_name, other)
            if other_specifier is None:
                continue
            other_version = other_specifier.version_specifier
            if not satisfies(other_version, specifier.version_specifier):
                continue
            if latest is None or parse_version(other_version) > parse_version(latest):
                latest = other_version

        if latest is None:
            return None

        logger.debug("Reusing %s@%s for %s", package_name, latest, consumer_key)
        description["dependencies"][package_name] = latest
        return DependencySpecifier(package_name, latest, DependencySpecifierType.VERSION)

    def _get_workspace_dependency_version(
        self, dependency_name: str, importer_key: str
    ) -> Optional[DependencySpecifier]:
        importer = self.get_importer(importer_key)
        if importer is None:
            return None
        all_dependencies: Dict[str, Any] = {}
        all_dependencies.update(importer.get("optionalDependencies") or {})
        all_dependencies.update(importer.get("dependencies") or {})
        all_dependencies.update(importer.get("devDependencies") or {})
        if dependency_name not in all_dependencies:
            return None
        return self._parse_dependency_key(dependency_name, dependency_version(all_dependencies[dependency_name]))

    def has_compatible_workspace_dependency(self, specifier: DependencySpecifier, importer_key: str) -> bool:
        if importer_key not in self.importers:
            return False
        return self.try_ensure_compatible_dependency(specifier, importer_key)

    def is_workspace_project_modified(self, project: Project, workspace_root: str) -> bool:
        """Return True if the project's manifest no longer matches its importer entry."""
        importer = self.get_importer(self.get_importer_key_by_path(workspace_root, project.folder))
        if importer is None:
            return True
        return is_project_modified(project, importer)

    def get_shrinkwrap_hash(self) -> str:
        return hashlib.sha1(self.serialize().encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return self._shrinkwrap_json

    def serialize(self) -> str:
        # pnpm omits empty top-level sections; keep them out to avoid diff noise.
        data = {
            key: value
            for key, value in self._shrinkwrap_json.items()
            if not (isinstance(value, dict) and not value)
        }
        return yaml.safe_dump(data, sort_keys=True, default_flow_style=False, width=1000)


# Which manifest section pnpm records a dependency under when it is declared in several.
_TYPE_PRIORITY = {DependencyType.OPTIONAL: 0, DependencyType.REGULAR: 1, DependencyType.DEV: 2}


def dependency_version(value: Any) -> str:
    """The resolved version of a dependency entry.

    pnpm 6 importers inline entries as ``{specifier: ^1.0.0, version: 1.0.3}``.
    """
    if isinstance(value, dict):
        return str(value.get("version") or "")
    return str(value)


def importer_specifiers(importer: Dict[str, Any]) -> Dict[str, Any]:
    """The specifiers an importer was resolved from, in either layout."""
    if isinstance(importer.get("specifiers"), dict):
        return importer["specifiers"]
    specifiers: Dict[str, Any] = {}
    for section in ("dependencies", "devDependencies", "optionalDependencies"):
        for name, value in (importer.get(section) or {}).items():
            if isinstance(value, dict) and "specifier" in value:
                specifiers[name] = value["specifier"]
    return specifiers


def is_project_modified(project: Project, importer: Dict[str, Any]) -> bool:
    """Compare a project's declared dependencies with its lockfile importer.

    Peer dependencies are not installed and are ignored. When a name is
    declared in several sections, optional beats regular beats dev.
    """
    chosen: Dict[str, Any] = {}
    for dependency in project.dependencies:
        if dependency.dependency_type == DependencyType.PEER:
            continue
        current = chosen.get(dependency.name)
        if current is None or _TYPE_PRIORITY[dependency.dependency_type] < _TYPE_PRIORITY[current.dependency_type]:
            chosen[dependency.name] = dependency

    for dependency in chosen.values():
        section = importer.get(dependency.dependency_type.value) or {}
        if dependency.name not in section:
            return True

    specifiers = importer_specifiers(importer)
    if len(chosen) != len(specifiers):
        return True

    for name, version_specifier in specifiers.items():
        dependency = chosen.get(name)
        if dependency is None or dependency.version != str(version_specifier):
            return True
    return False
