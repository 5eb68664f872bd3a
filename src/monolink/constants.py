"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    TOOL_ERROR = 2
    EXIT_MISMATCHES = 3


class PackageManagers(Enum):
    """Package managers the engine can delegate installation to.

    Args:
        Enum (string): Package manager tool names.
    """

    NPM = "npm"
    PNPM = "pnpm"
    YARN = "yarn"


class PnpmStoreOptions(Enum):
    """Where pnpm keeps its content-addressable store."""

    LOCAL = "local"
    GLOBAL = "global"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    SUPPORTED_PACKAGE_MANAGERS = [
        PackageManagers.NPM.value,
        PackageManagers.PNPM.value,
        PackageManagers.YARN.value,
    ]
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests

    # Repository layout
    CONFIG_FILE = "monolink.yml"
    COMMON_FOLDER = "common"
    TEMP_FOLDER = "common/temp"
    CONFIG_SUBFOLDER = "config"
    COMMON_VERSIONS_FILE = "common-versions.yml"
    PACKAGE_JSON_FILE = "package.json"
    NODE_MODULES = "node_modules"
    BIN_FOLDER = ".bin"
    PROJECT_TEMP_FOLDER = ".monolink/temp"
    PROJECT_SHRINKWRAP_DEPS_FILE = "shrinkwrap-deps.json"

    # Synthetic temp projects
    TEMP_PROJECT_SCOPE = "@monolink-temp"
    TEMP_PROJECTS_FOLDER = "projects"
    COMMON_PACKAGE_NAME = "monolink-common"
    PLACEHOLDER_VERSION = "0.0.0"
    LOCAL_LINK_DEPENDENCIES_FIELD = "monolinkDependencies"

    # Lockfiles and generated files
    NPM_SHRINKWRAP_FILE = "npm-shrinkwrap.json"
    PNPM_SHRINKWRAP_FILE = "pnpm-lock.yaml"
    YARN_SHRINKWRAP_FILE = "yarn.lock"
    PNPM_WORKSPACE_FILE = "pnpm-workspace.yaml"
    PNPMFILE = "pnpmfile.js"
    NPMRC_FILE = ".npmrc"
    WORKSPACE_PROTOCOL = "workspace:"

    # State markers
    LAST_INSTALL_FLAG = "last-install.flag"
    LAST_LINK_FLAG = "last-link.flag"
    LAST_CHECK_FLAG = "last-check.flag"
    RECYCLER_FOLDER = "monolink-recycler"
    INSTALL_LOCK_NAME = "install"

    # Install behavior
    DEFAULT_MAX_INSTALL_ATTEMPTS = 3
    RELEASE_CHECK_TTL_SEC = 24 * 60 * 60
    LOCK_POLL_INTERVAL_SEC = 0.5
    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    TOOL_PACKAGE_NAME = "monolink"

    # Environment
    ENV_LOG_LEVEL = "MONOLINK_LOG_LEVEL"
    ENV_GLOBAL_FOLDER = "MONOLINK_GLOBAL_FOLDER"
    ENV_ABSOLUTE_SYMLINKS = "MONOLINK_ABSOLUTE_SYMLINKS"
    DEFAULT_GLOBAL_FOLDER = "~/.monolink"

    # Mismatch reporting
    MISMATCH_PRINT_LIMIT = 5
