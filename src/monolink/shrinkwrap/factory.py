"""Selects the lockfile implementation for a package manager."""

from __future__ import annotations

from typing import Optional

from monolink.constants import Constants, PackageManagers
from monolink.shrinkwrap.base import ShrinkwrapFile
from monolink.shrinkwrap.npm import NpmShrinkwrapFile
from monolink.shrinkwrap.pnpm import PnpmShrinkwrapFile
from monolink.shrinkwrap.yarn import YarnShrinkwrapFile

_LOADERS = {
    PackageManagers.NPM: NpmShrinkwrapFile.load,
    PackageManagers.PNPM: PnpmShrinkwrapFile.load,
    PackageManagers.YARN: YarnShrinkwrapFile.load,
}

_FILENAMES = {
    PackageManagers.NPM: Constants.NPM_SHRINKWRAP_FILE,
    PackageManagers.PNPM: Constants.PNPM_SHRINKWRAP_FILE,
    PackageManagers.YARN: Constants.YARN_SHRINKWRAP_FILE,
}


def shrinkwrap_filename(package_manager: PackageManagers) -> str:
    """Return the lockfile name the package manager writes."""
    return _FILENAMES[package_manager]


def load_shrinkwrap_file(package_manager: PackageManagers, path: str) -> Optional[ShrinkwrapFile]:
    """Load the lockfile at ``path`` with the parser for ``package_manager``.

    Returns:
        The parsed file, or None if it does not exist.

    Raises:
        CorruptLockfile: The file exists but cannot be parsed.
    """
    return _LOADERS[package_manager](path)
