"""The install state machine.

``NotPrepared -> Prepared -> (Skipped | Installing -> Installed) -> Linked``

Preparation validates the lockfile against every project's requests and
generates the temp folder. Installation runs only when something changed
since the last successful install, and the final link step rebuilds each
project's ``node_modules``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from monolink import __version__
from monolink.common.filesystem import delete_file, is_file_timestamp_current, sync_file
from monolink.common.logging_utils import Timer
from monolink.config import CommonVersions, RepoConfiguration
from monolink.constants import Constants, PackageManagers
from monolink.errors import AlreadyReportedError, CorruptLockfile, MonolinkError, StaleLockfile
from monolink.install.package_manager import (
    build_environment,
    ensure_local_package_manager,
    execute_command_with_retry,
    get_install_command,
    merge_environment,
    runtime_version,
)
from monolink.install.lock_file import LockFile
from monolink.install.recycler import Recycler
from monolink.install.release_check import check_if_release_is_published
from monolink.install.state_marker import InstallStateMarker
from monolink.install.temp_workspace import TempWorkspace, create_temp_workspace
from monolink.link_manager import LinkManager
from monolink.project import Project
from monolink.shrinkwrap.base import ShrinkwrapFile
from monolink.shrinkwrap.factory import load_shrinkwrap_file
from monolink.shrinkwrap.integrity import IntegrityContext
from monolink.shrinkwrap.pnpm import PnpmShrinkwrapFile
from monolink.version_reconciler import (
    PreferredVersionTable,
    VersionMismatchReport,
    find_mismatches,
    get_all_preferred_versions,
)

logger = logging.getLogger(__name__)


class InstallState(Enum):
    """Progress of an :class:`InstallOrchestrator` run."""

    NOT_PREPARED = "NotPrepared"
    PREPARED = "Prepared"
    SKIPPED = "Skipped"
    INSTALLING = "Installing"
    INSTALLED = "Installed"
    LINKED = "Linked"


@dataclass
class InstallOptions:
    """Switches chosen on the command line.

    Attributes:
        allow_shrinkwrap_updates: The lockfile may be regenerated ("update").
        full_upgrade: Ignore the committed lockfile entirely.
        purge: Delete installed packages before installing.
        no_link: Stop after installing.
        recheck: Treat the lockfile as stale even if it looks current.
        force_link: Link even when the last link is still current.
        max_install_attempts: Overrides the configured retry ceiling.
        check_release: Warn when this release of the tool was unpublished.
        local_link_overrides_cyclic: See :class:`LinkManager`.
    """

    allow_shrinkwrap_updates: bool = False
    full_upgrade: bool = False
    purge: bool = False
    no_link: bool = False
    recheck: bool = False
    force_link: bool = False
    max_install_attempts: Optional[int] = None
    check_release: bool = True
    local_link_overrides_cyclic: bool = False


class InstallOrchestrator:
    """Runs one install or update of the whole repo.

    Args:
        config: Repository configuration.
        projects: Every project in the repo.
        common_versions: Repo-wide version policy.
        options: Command line switches.
    """

    def __init__(
        self,
        config: RepoConfiguration,
        projects: Sequence[Project],
        common_versions: CommonVersions,
        options: Optional[InstallOptions] = None,
    ) -> None:
        self.config = config
        self.projects: List[Project] = list(projects)
        self.common_versions = common_versions
        self.options = options or InstallOptions()
        self.state = InstallState.NOT_PREPARED
        self.shrinkwrap: Optional[ShrinkwrapFile] = None
        self.preferred_versions: Optional[PreferredVersionTable] = None
        self.temp_workspace: TempWorkspace = create_temp_workspace(config)
        self.package_manager_executable: Optional[str] = None
        self.shrinkwrap_warnings: List[str] = []

    @property
    def max_install_attempts(self) -> int:
        return self.options.max_install_attempts or self.config.max_install_attempts

    @property
    def install_marker(self) -> InstallStateMarker:
        state: Dict[str, Any] = {
            "runtime": runtime_version(),
            "packageManager": self.config.package_manager.value,
            "packageManagerVersion": self.config.package_manager_version,
        }
        if self.config.package_manager == PackageManagers.PNPM:
            state["storePath"] = self.config.pnpm_store_path or self.config.pnpm_store.value
        return InstallStateMarker(self.config.temp_folder, state)

    @property
    def last_link_flag_path(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.LAST_LINK_FLAG)

    @property
    def temp_node_modules(self) -> str:
        return os.path.join(self.config.temp_folder, Constants.NODE_MODULES)

    def do_install(self) -> InstallState:
        """Prepare, install if needed, then link.

        The whole run holds the repo's install lock. A lock left behind by
        a crashed run means the temp folder may be half written, so that
        case always gets a clean install.

        Returns:
            The state reached.
        """
        with LockFile.acquire(self.config.temp_folder, Constants.INSTALL_LOCK_NAME) as lock:
            if lock.dirty_when_acquired:
                logger.warning("A previous install did not finish; doing a clean install.")
            return self._do_install(lock.dirty_when_acquired)

    def _do_install(self, previous_run_crashed: bool) -> InstallState:
        shrinkwrap_is_up_to_date = self.prepare()
        marker = self.install_marker
        clean_install = self.options.purge or previous_run_crashed or not marker.is_valid()

        marker_mtime = marker.mtime
        needs_install = (
            not shrinkwrap_is_up_to_date
            or clean_install
            or marker_mtime is None
            or not self.can_skip_install(marker_mtime)
        )

        if needs_install:
            self.state = InstallState.INSTALLING
            if self.options.check_release:
                self._check_release()
            # An interrupted install must not look complete, and links into it are stale.
            delete_file(self.last_link_flag_path)
            marker.clear()

            self.install(clean_install)

            if self.options.allow_shrinkwrap_updates and not shrinkwrap_is_up_to_date:
                self._sync_shrinkwrap_after_update()
            marker.create()
            self.state = InstallState.INSTALLED
        else:
            logger.info("Installation is already up-to-date.")
            self.state = InstallState.SKIPPED

        if not self.options.no_link:
            self._link()
        return self.state

    def _check_release(self) -> None:
        flag_folder = os.path.join(self.config.global_folder, f"{Constants.TOOL_PACKAGE_NAME}-{__version__}")
        if check_if_release_is_published(flag_folder, __version__) is False:
            logger.warning("This release of %s was unpublished; it may be unstable.", Constants.TOOL_PACKAGE_NAME)

    def _run_policy_checks(self) -> None:
        if not self.config.ensure_consistent_versions:
            return
        report = VersionMismatchReport(find_mismatches(self.projects, self.common_versions))
        if report.number_of_mismatches:
            logger.error(report.render_text(truncate=True))
            logger.error(
                'Found %d mis-matching dependencies! Run "%s check" for the full list.',
                report.number_of_mismatches,
                Constants.TOOL_PACKAGE_NAME,
            )
            raise AlreadyReportedError("Inconsistent dependency versions")

    def _load_committed_shrinkwrap(self) -> Optional[ShrinkwrapFile]:
        if self.options.full_upgrade:
            logger.info("Ignoring the committed lockfile because a full upgrade was requested")
            return None
        path = self.config.committed_shrinkwrap_path
        try:
            return load_shrinkwrap_file(self.config.package_manager, path)
        except CorruptLockfile as exc:
            if not self.options.allow_shrinkwrap_updates:
                logger.error("%s", exc)
                raise AlreadyReportedError(str(exc)) from exc
            logger.warning("%s A new lockfile will be generated.", exc)
            return None

    def _sync_config_files(self) -> None:
        config_folder = self.config.common_config_folder
        temp_folder = self.config.temp_folder
        sync_file(os.path.join(config_folder, Constants.NPMRC_FILE), os.path.join(temp_folder, Constants.NPMRC_FILE))
        if self.config.package_manager == PackageManagers.PNPM:
            sync_file(os.path.join(config_folder, Constants.PNPMFILE), os.path.join(temp_folder, Constants.PNPMFILE))

    def prepare(self) -> bool:
        """Validate the lockfile and generate the temp folder.

        Returns:
            True if the lockfile already satisfies every project.

        Raises:
            StaleLockfile: The lockfile is stale and updates are not allowed.
            AlreadyReportedError: A policy check failed, or the lockfile is
                corrupt and updates are not allowed.
        """
        with Timer() as t:
            self._run_policy_checks()
            self.package_manager_executable = ensure_local_package_manager(self.config)
            self.shrinkwrap = self._load_committed_shrinkwrap()
            self._sync_config_files()
            self.preferred_versions = get_all_preferred_versions(self.projects, self.common_versions)

            result = self.temp_workspace.prepare(
                self.shrinkwrap,
                self.preferred_versions,
                self.projects,
                self.options.allow_shrinkwrap_updates,
            )
            self.projects = result.projects
            self.shrinkwrap_warnings = result.warnings
            shrinkwrap_is_up_to_date = result.shrinkwrap_is_up_to_date

            if self.options.recheck:
                logger.info("Rechecking the lockfile as requested")
                shrinkwrap_is_up_to_date = False
            elif self.shrinkwrap is not None and self.shrinkwrap.should_force_recheck():
                shrinkwrap_is_up_to_date = False

            # The package manager reads the lockfile from the temp folder, including in-memory fixes.
            if self.shrinkwrap is not None:
                self.shrinkwrap.save(self.config.temp_shrinkwrap_path)
            else:
                delete_file(self.config.temp_shrinkwrap_path)

        logger.debug("Prepared the temp folder in %.0f ms", t.duration_ms())
        self.state = InstallState.PREPARED

        if not shrinkwrap_is_up_to_date and not self.options.allow_shrinkwrap_updates:
            raise StaleLockfile(
                f'The lockfile is out of date. You need to run "{Constants.TOOL_PACKAGE_NAME} update".'
            )
        return shrinkwrap_is_up_to_date

    def can_skip_install(self, marker_mtime: float) -> bool:
        """Return True if no input changed since the last successful install."""
        if not os.path.isdir(self.temp_node_modules):
            return False
        inputs = self.temp_workspace.input_files(self.projects) + [self.temp_node_modules]
        return is_file_timestamp_current(marker_mtime, inputs)

    def install(self, clean_install: bool) -> None:
        """Run the package manager in the temp folder.

        Raises:
            ExternalToolFailure: Every attempt failed.
        """
        executable = self.package_manager_executable or self.config.package_manager.value
        command = get_install_command(self.config, self.options.allow_shrinkwrap_updates)
        env = merge_environment(build_environment(self.config), command.env_vars)
        temp_folder = self.config.temp_folder

        with Recycler(os.path.join(temp_folder, Constants.RECYCLER_FOLDER)) as recycler:
            if clean_install:
                logger.info("Deleting installed packages for a clean install")
                recycler.move_folder(self.temp_node_modules)
                for project in self.projects:
                    recycler.move_folder(os.path.join(project.folder, Constants.NODE_MODULES))
                if self.options.purge and self.config.pnpm_store_path:
                    recycler.move_folder(self.config.pnpm_store_path)

            def on_retry(attempt: int) -> None:
                if self.config.package_manager == PackageManagers.PNPM and self.config.pnpm_store_path:
                    # A failed pnpm run can leave the store in a bad state.
                    logger.info("Removing the pnpm store before retrying")
                    recycler.move_folder(self.config.pnpm_store_path)
                logger.info("Deleting the node_modules folder before retrying")
                recycler.move_folder(self.temp_node_modules)

            execute_command_with_retry(
                self.max_install_attempts,
                [executable] + command.args,
                cwd=temp_folder,
                env=env,
                on_retry=on_retry,
            )

            if self.config.package_manager == PackageManagers.NPM and self.options.allow_shrinkwrap_updates:
                execute_command_with_retry(1, [executable, "shrinkwrap"], cwd=temp_folder, env=env)

    def _sync_shrinkwrap_after_update(self) -> None:
        temp_path = self.config.temp_shrinkwrap_path
        updated = load_shrinkwrap_file(self.config.package_manager, temp_path)
        if updated is None:
            raise MonolinkError(f"The package manager did not write a lockfile to {temp_path}")
        self.shrinkwrap = updated
        # Normalized now so the next prepare() does not rewrite it and trigger a reinstall.
        updated.save(temp_path)
        sync_file(temp_path, self.config.committed_shrinkwrap_path)
        logger.info(
            "Updated %s; commit it to source control.",
            os.path.relpath(self.config.committed_shrinkwrap_path, self.config.repo_root),
        )

    def link(self) -> bool:
        """Create the per-project symlinks under the install lock.

        Returns:
            True if linking ran.
        """
        with LockFile.acquire(self.config.temp_folder, Constants.INSTALL_LOCK_NAME):
            return self._link()

    def _link(self) -> bool:
        if self.shrinkwrap is None:
            self.shrinkwrap = load_shrinkwrap_file(self.config.package_manager, self.config.temp_shrinkwrap_path)
        integrity_context = None
        if isinstance(self.shrinkwrap, PnpmShrinkwrapFile):
            integrity_context = IntegrityContext(self.shrinkwrap)
        manager = LinkManager(
            self.config,
            self.projects,
            integrity_context,
            local_link_overrides_cyclic=self.options.local_link_overrides_cyclic,
        )
        linked = manager.create_symlinks_for_projects(force=self.options.force_link)
        self.state = InstallState.LINKED
        return linked
