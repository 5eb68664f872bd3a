"""Invoking the external package manager.

Each supported package manager gets its install arguments and environment
from a builder function. Commands run through
:func:`execute_command_with_retry`, which gives flaky installs a few more
chances before reporting failure.
"""

from __future__ import annotations

import logging
import os
import platform
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from monolink.common.filesystem import (
    LinkKind,
    create_link,
    delete_path,
    ensure_empty_folder,
    ensure_folder,
    write_json,
)
from monolink.common.logging_utils import Timer, extra_context, is_debug_enabled
from monolink.config import RepoConfiguration
from monolink.constants import Constants, PackageManagers
from monolink.errors import ExternalToolFailure
from monolink.install.lock_file import LockFile
from monolink.install.state_marker import InstallStateMarker

logger = logging.getLogger(__name__)


@dataclass
class InstallCommand:
    """Arguments and environment for one package manager invocation."""

    args: List[str] = field(default_factory=list)
    env_vars: Dict[str, str] = field(default_factory=dict)


def get_install_command(
    config: RepoConfiguration,
    allow_shrinkwrap_updates: bool,
) -> InstallCommand:
    """Build the install arguments for the configured package manager."""
    builders = {
        PackageManagers.NPM: _build_npm,
        PackageManagers.PNPM: _build_pnpm,
        PackageManagers.YARN: _build_yarn,
    }
    command = builders[config.package_manager](config, allow_shrinkwrap_updates)
    logger.debug("Install arguments: %s", command.args)
    return command


def _build_npm(config: RepoConfiguration, allow_shrinkwrap_updates: bool) -> InstallCommand:
    return InstallCommand(
        args=[
            "install",
            "--cache",
            os.path.join(config.temp_folder, "npm-cache"),
            "--tmp",
            os.path.join(config.temp_folder, "npm-tmp"),
        ],
    )


def _build_pnpm(config: RepoConfiguration, allow_shrinkwrap_updates: bool) -> InstallCommand:
    args = ["install"]
    if config.pnpm_store_path:
        # A repo-local store is only ever used by one install at a time.
        args += ["--store", config.pnpm_store_path, "--no-lock"]
    args.append("--no-prefer-frozen-lockfile" if allow_shrinkwrap_updates else "--frozen-lockfile")
    if config.strict_peer_dependencies:
        args.append("--strict-peer-dependencies")
    if config.workspaces_enabled:
        args += ["--recursive", "--link-workspace-packages", "false"]
    return InstallCommand(args=args)


def _build_yarn(config: RepoConfiguration, allow_shrinkwrap_updates: bool) -> InstallCommand:
    args = [
        "install",
        "--link-folder",
        os.path.join(config.temp_folder, "yarn-link"),
        "--cache-folder",
        os.path.join(config.temp_folder, "yarn-cache"),
        "--non-interactive",
    ]
    if not allow_shrinkwrap_updates:
        args.append("--frozen-lockfile")
    return InstallCommand(args=args)


def merge_environment(
    base: Mapping[str, str], extra: Mapping[str, str], override: bool = True
) -> Dict[str, str]:
    """Combine two environments.

    Args:
        base: Starting environment, usually ``os.environ``.
        extra: Variables to add.
        override: Whether ``extra`` replaces variables already in ``base``.
    """
    env = dict(base)
    for key, value in extra.items():
        if override or key not in env:
            env[key] = value
    return env


def build_environment(config: RepoConfiguration, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment for package manager subprocesses."""
    tool_env = {Constants.ENV_GLOBAL_FOLDER: config.global_folder}
    if config.absolute_symlinks:
        tool_env[Constants.ENV_ABSOLUTE_SYMLINKS] = "1"
    env = merge_environment(os.environ, tool_env, override=False)
    if extra:
        env = merge_environment(env, extra)
    return env


def execute_command_with_retry(
    max_attempts: int,
    command: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    on_retry: Optional[Callable[[int], None]] = None,
) -> None:
    """Run ``command`` until it succeeds or ``max_attempts`` runs have failed.

    Args:
        max_attempts: Upper bound on the number of runs.
        command: The executable and its arguments.
        cwd: Working directory.
        env: Subprocess environment; inherits the current one when None.
        on_retry: Called with the failed attempt number before each retry,
            to undo whatever the failed run left behind.

    Raises:
        ExternalToolFailure: Every attempt failed, or the executable was not found.
    """
    command_line = " ".join(command)
    attempt = 0
    while True:
        attempt += 1
        logger.info("Invoking: %s", command_line)
        with Timer() as t:
            try:
                result = subprocess.run(  # noqa: S603
                    list(command),
                    cwd=cwd,
                    env=dict(env) if env is not None else None,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise ExternalToolFailure(command_line, None, attempt) from exc
        if is_debug_enabled(logger):
            logger.debug(
                "Command finished",
                extra=extra_context(
                    event="install_attempt",
                    component="package_manager",
                    action=command[0],
                    outcome="success" if result.returncode == 0 else "failure",
                    attempt=attempt,
                    duration_ms=t.duration_ms(),
                ),
            )
        if result.returncode == 0:
            return
        if attempt >= max_attempts:
            raise ExternalToolFailure(command_line, result.returncode, attempt)
        logger.warning(
            "The command failed with exit code %s (attempt %d of %d); retrying",
            result.returncode,
            attempt,
            max_attempts,
        )
        if on_retry is not None:
            on_retry(attempt)


def runtime_version() -> str:
    return platform.python_version()


def local_package_manager_folder(config: RepoConfiguration) -> str:
    """Folder under the temp folder that links to the installed package manager."""
    return os.path.join(config.temp_folder, f"{config.package_manager.value}-local")


def local_package_manager_executable(config: RepoConfiguration) -> str:
    name = config.package_manager.value
    if sys.platform == "win32":
        name += ".cmd"
    return os.path.join(local_package_manager_folder(config), Constants.NODE_MODULES, Constants.BIN_FOLDER, name)


def ensure_local_package_manager(config: RepoConfiguration) -> str:
    """Install the configured package manager version once per machine.

    The tool is installed into ``<global folder>/<pm>-<version>`` under an
    inter-process lock, tracked by its own state marker, and linked into
    the temp folder.

    Returns:
        Path of the package manager executable.
    """
    pm_name = config.package_manager.value
    version = config.package_manager_version
    resource = f"{pm_name}-{version}"
    install_folder = os.path.join(config.global_folder, resource)

    ensure_folder(config.global_folder)
    with LockFile.acquire(config.global_folder, resource) as lock:
        marker = InstallStateMarker(
            install_folder,
            {
                "runtime": runtime_version(),
                "packageManager": pm_name,
                "packageManagerVersion": version,
            },
        )
        if lock.dirty_when_acquired or not marker.is_valid():
            logger.info("Installing %s@%s into %s", pm_name, version, install_folder)
            ensure_empty_folder(install_folder)
            write_json(
                os.path.join(install_folder, Constants.PACKAGE_JSON_FILE),
                {
                    "name": f"{pm_name}-local-install",
                    "version": Constants.PLACEHOLDER_VERSION,
                    "private": True,
                    "dependencies": {pm_name: version},
                },
            )
            execute_command_with_retry(
                config.max_install_attempts,
                ["npm", "install"],
                cwd=install_folder,
                env=build_environment(config),
            )
            marker.create()
        else:
            logger.debug("Found %s@%s in %s", pm_name, version, install_folder)

    link_path = local_package_manager_folder(config)
    ensure_folder(config.temp_folder)
    delete_path(link_path)
    create_link(LinkKind.DIRECTORY, install_folder, link_path, config.absolute_symlinks)
    return local_package_manager_executable(config)
