"""Repository configuration: ``monolink.yml`` and ``common-versions.yml``.

Both files are YAML, validated against a Draft-07 JSON Schema before use.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from jsonschema import Draft7Validator

from monolink.constants import Constants, PackageManagers, PnpmStoreOptions
from monolink.errors import AmbiguousPreference, ConfigurationError
from monolink.project import Project, assign_temp_project_names, load_project

logger = logging.getLogger(__name__)

REPO_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["packageManager", "packageManagerVersion", "projects"],
    "properties": {
        "packageManager": {"type": "string", "enum": Constants.SUPPORTED_PACKAGE_MANAGERS},
        "packageManagerVersion": {"type": "string", "minLength": 1},
        "commonFolder": {"type": "string"},
        "tempFolder": {"type": "string"},
        "useWorkspaces": {"type": "boolean"},
        "maxInstallAttempts": {"type": "integer", "minimum": 1},
        "strictPeerDependencies": {"type": "boolean"},
        "ensureConsistentVersions": {"type": "boolean"},
        "pnpmStore": {"type": "string", "enum": [opt.value for opt in PnpmStoreOptions]},
        "absoluteSymlinks": {"type": "boolean"},
        "globalFolder": {"type": "string"},
        "projects": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["packageName", "projectFolder"],
                "properties": {
                    "packageName": {"type": "string", "minLength": 1},
                    "projectFolder": {"type": "string", "minLength": 1},
                    "cyclicDependencyProjects": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}

_VERSION_MAP_SCHEMA = {"type": "object", "additionalProperties": {"type": "string"}}

COMMON_VERSIONS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "preferredVersions": _VERSION_MAP_SCHEMA,
        "xstitchPreferredVersions": _VERSION_MAP_SCHEMA,
        "allowedAlternativeVersions": {
            "type": "object",
            "additionalProperties": {"type": "array", "items": {"type": "string"}},
        },
        "implicitlyPreferredVersions": {"type": "boolean"},
    },
    "additionalProperties": False,
}


def validate_schema(schema: Dict[str, Any], data: Any, source: str) -> None:
    """Validate ``data`` and raise on the first error.

    Raises:
        ConfigurationError: The data does not match the schema.
    """
    validator = Draft7Validator(schema)
    errs = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errs:
        first = errs[0]
        path = "/".join([str(p) for p in first.path])
        raise ConfigurationError(f"Invalid configuration in {source} at '{path}': {first.message}")


def _read_yaml(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to parse {path}: {exc}") from exc


@dataclass(frozen=True)
class ProjectEntry:
    """A project as listed in the repository configuration."""

    package_name: str
    project_folder: str
    cyclic_dependency_projects: Tuple[str, ...] = ()


@dataclass
class RepoConfiguration:
    """Settings shared by every command, resolved to absolute paths."""

    repo_root: str
    package_manager: PackageManagers
    package_manager_version: str
    project_entries: List[ProjectEntry] = field(default_factory=list)
    common_folder: str = ""
    temp_folder: str = ""
    use_workspaces: bool = False
    max_install_attempts: int = Constants.DEFAULT_MAX_INSTALL_ATTEMPTS
    strict_peer_dependencies: bool = False
    ensure_consistent_versions: bool = False
    pnpm_store: PnpmStoreOptions = PnpmStoreOptions.LOCAL
    absolute_symlinks: bool = False
    global_folder: str = ""

    def __post_init__(self) -> None:
        if not self.common_folder:
            self.common_folder = os.path.join(self.repo_root, Constants.COMMON_FOLDER)
        if not self.temp_folder:
            self.temp_folder = os.path.join(self.repo_root, Constants.TEMP_FOLDER)
        if not self.global_folder:
            self.global_folder = os.path.expanduser(Constants.DEFAULT_GLOBAL_FOLDER)

    @property
    def common_config_folder(self) -> str:
        return os.path.join(self.common_folder, Constants.CONFIG_SUBFOLDER)

    @property
    def common_versions_path(self) -> str:
        return os.path.join(self.common_config_folder, Constants.COMMON_VERSIONS_FILE)

    @property
    def workspaces_enabled(self) -> bool:
        return self.use_workspaces and self.package_manager == PackageManagers.PNPM

    @property
    def shrinkwrap_filename(self) -> str:
        return {
            PackageManagers.NPM: Constants.NPM_SHRINKWRAP_FILE,
            PackageManagers.PNPM: Constants.PNPM_SHRINKWRAP_FILE,
            PackageManagers.YARN: Constants.YARN_SHRINKWRAP_FILE,
        }[self.package_manager]

    @property
    def committed_shrinkwrap_path(self) -> str:
        return os.path.join(self.common_config_folder, self.shrinkwrap_filename)

    @property
    def temp_shrinkwrap_path(self) -> str:
        return os.path.join(self.temp_folder, self.shrinkwrap_filename)

    @property
    def pnpm_store_path(self) -> str:
        if self.pnpm_store == PnpmStoreOptions.GLOBAL:
            return ""
        return os.path.join(self.temp_folder, "pnpm-store")

    def load_projects(self) -> List[Project]:
        """Read every configured project's manifest.

        Raises:
            ConfigurationError: A manifest is missing or names the wrong package,
                or a cyclic dependency names an unknown project.
        """
        known = {entry.package_name for entry in self.project_entries}
        temp_names = assign_temp_project_names(entry.package_name for entry in self.project_entries)
        projects: List[Project] = []
        for entry in self.project_entries:
            for cyclic in entry.cyclic_dependency_projects:
                if cyclic not in known:
                    raise ConfigurationError(
                        f'"{entry.package_name}" lists an unknown cyclic dependency project "{cyclic}"'
                    )
            projects.append(
                load_project(
                    os.path.join(self.repo_root, entry.project_folder),
                    entry.cyclic_dependency_projects,
                    temp_names[entry.package_name],
                    expected_name=entry.package_name,
                )
            )
        return projects


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_repo_configuration(config_path: str) -> RepoConfiguration:
    """Load and validate ``monolink.yml``.

    Args:
        config_path: Path to the configuration file; its folder is the repo root.

    Returns:
        The resolved configuration.

    Raises:
        ConfigurationError: The file is missing, unparsable, or invalid.
    """
    if not os.path.isfile(config_path):
        raise ConfigurationError(f"Config file not found: {config_path}")

    data = _read_yaml(config_path)
    if data is None:
        data = {}
    validate_schema(REPO_CONFIG_SCHEMA, data, config_path)

    repo_root = os.path.dirname(os.path.abspath(config_path))
    entries: List[ProjectEntry] = []
    seen = set()
    for item in data.get("projects", []):
        name = item["packageName"]
        if name in seen:
            raise ConfigurationError(f'The project "{name}" is listed more than once in {config_path}')
        seen.add(name)
        entries.append(ProjectEntry(name, item["projectFolder"], tuple(item.get("cyclicDependencyProjects", []))))

    global_folder = os.environ.get(Constants.ENV_GLOBAL_FOLDER) or data.get("globalFolder") or ""
    absolute_symlinks = _env_flag(Constants.ENV_ABSOLUTE_SYMLINKS)
    if absolute_symlinks is None:
        absolute_symlinks = bool(data.get("absoluteSymlinks", False))

    common_folder = data.get("commonFolder")
    temp_folder = data.get("tempFolder")
    config = RepoConfiguration(
        repo_root=repo_root,
        package_manager=PackageManagers(data["packageManager"]),
        package_manager_version=str(data["packageManagerVersion"]),
        project_entries=entries,
        common_folder=os.path.join(repo_root, common_folder) if common_folder else "",
        temp_folder=os.path.join(repo_root, temp_folder) if temp_folder else "",
        use_workspaces=bool(data.get("useWorkspaces", False)),
        max_install_attempts=int(data.get("maxInstallAttempts", Constants.DEFAULT_MAX_INSTALL_ATTEMPTS)),
        strict_peer_dependencies=bool(data.get("strictPeerDependencies", False)),
        ensure_consistent_versions=bool(data.get("ensureConsistentVersions", False)),
        pnpm_store=PnpmStoreOptions(data.get("pnpmStore", PnpmStoreOptions.LOCAL.value)),
        absolute_symlinks=absolute_symlinks,
        global_folder=os.path.expanduser(global_folder) if global_folder else "",
    )
    if config.use_workspaces and config.package_manager != PackageManagers.PNPM:
        logger.warning("useWorkspaces is only supported with pnpm; ignoring it for %s", config.package_manager.value)
    logger.debug("Loaded repo configuration from %s", config_path)
    return config


@dataclass
class CommonVersions:
    """Repo-wide version policy from ``common-versions.yml``.

    Attributes:
        preferred_versions: Explicit version pins.
        xstitch_preferred_versions: A second explicit table; a name must not
            appear in both.
        allowed_alternative_versions: Extra specifiers tolerated for a name
            without counting as a mismatch.
        implicitly_preferred_versions: Whether versions used consistently
            across all projects are pinned automatically.
    """

    preferred_versions: Dict[str, str] = field(default_factory=dict)
    xstitch_preferred_versions: Dict[str, str] = field(default_factory=dict)
    allowed_alternative_versions: Dict[str, List[str]] = field(default_factory=dict)
    implicitly_preferred_versions: bool = True
    path: str = ""

    def get_all_preferred_versions(self) -> Dict[str, str]:
        """Merge both explicit tables.

        Raises:
            AmbiguousPreference: A name is pinned in both tables.
        """
        merged = dict(self.preferred_versions)
        for name, version in self.xstitch_preferred_versions.items():
            if name in merged:
                raise AmbiguousPreference(
                    f'The dependency "{name}" is listed in both preferredVersions and '
                    f"xstitchPreferredVersions of {self.path or Constants.COMMON_VERSIONS_FILE}"
                )
            merged[name] = version
        return merged

    def is_allowed_alternative(self, name: str, version: str) -> bool:
        return version in self.allowed_alternative_versions.get(name, ())


def load_common_versions(path: str) -> CommonVersions:
    """Load ``common-versions.yml``; a missing file yields the defaults."""
    if not os.path.isfile(path):
        logger.debug("No common versions file at %s", path)
        return CommonVersions(path=path)
    data = _read_yaml(path) or {}
    validate_schema(COMMON_VERSIONS_SCHEMA, data, path)
    return CommonVersions(
        preferred_versions=dict(data.get("preferredVersions") or {}),
        xstitch_preferred_versions=dict(data.get("xstitchPreferredVersions") or {}),
        allowed_alternative_versions={
            name: list(versions) for name, versions in (data.get("allowedAlternativeVersions") or {}).items()
        },
        implicitly_preferred_versions=bool(data.get("implicitlyPreferredVersions", True)),
        path=path,
    )
