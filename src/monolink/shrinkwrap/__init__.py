"""Lockfile formats behind one contract."""

from monolink.shrinkwrap.base import ShrinkwrapFile, check_dependency_version, find_orphaned_projects
from monolink.shrinkwrap.factory import load_shrinkwrap_file, shrinkwrap_filename
from monolink.shrinkwrap.npm import NpmShrinkwrapFile
from monolink.shrinkwrap.pnpm import PnpmDependencyPath, PnpmShrinkwrapFile, parse_pnpm_dependency_key
from monolink.shrinkwrap.yarn import YarnShrinkwrapFile

__all__ = [
    "ShrinkwrapFile",
    "NpmShrinkwrapFile",
    "PnpmShrinkwrapFile",
    "YarnShrinkwrapFile",
    "PnpmDependencyPath",
    "check_dependency_version",
    "find_orphaned_projects",
    "load_shrinkwrap_file",
    "parse_pnpm_dependency_key",
    "shrinkwrap_filename",
]
