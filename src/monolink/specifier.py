"""Parsing of package.json dependency version specifiers.

A specifier such as ``^1.2.3``, ``latest``, ``file:../lib.tgz`` or
``npm:left-pad@1.0.0`` is classified into one of the kinds npm itself
recognizes, plus the ``workspace:`` protocol understood by pnpm and yarn.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from monolink.constants import Constants
from monolink.errors import MalformedSpecifier
from monolink.versioning import is_valid_range, is_valid_version


class DependencySpecifierType(Enum):
    """The kind of a dependency version specifier."""

    VERSION = "Version"
    RANGE = "Range"
    TAG = "Tag"
    FILE = "File"
    DIRECTORY = "Directory"
    REMOTE = "Remote"
    GIT = "Git"
    ALIAS = "Alias"
    WORKSPACE = "Workspace"


# Kinds whose versions can be compared with semver range rules.
SEMVER_SPECIFIER_TYPES = (DependencySpecifierType.VERSION, DependencySpecifierType.RANGE)

_ALIAS_PREFIX = "npm:"
_FILE_PREFIX = "file:"
_TARBALL_RE = re.compile(r"[.](?:tgz|tar\.gz|tar)$", re.IGNORECASE)
_PATH_RE = re.compile(r"^(?:[.]|~[/]|[/\\]|[a-zA-Z]:)")
_GIT_RE = re.compile(
    r"^(?:git\+[a-z]+:|git:|git@|(?:github|gitlab|bitbucket|gist):)", re.IGNORECASE
)
_GIT_SHORTHAND_RE = re.compile(r"^[A-Za-z0-9][\w.-]*/[\w.-]+(?:#.*)?$")
_GIT_URL_RE = re.compile(
    r"^https?://(?:[^/]+@)?(?:github\.com|gitlab\.com|bitbucket\.org)/[^/]+/[^/#]+?(?:\.git)?/?(?:#.*)?$"
    r"|^https?://.+\.git(?:#.*)?$",
    re.IGNORECASE,
)
_REMOTE_RE = re.compile(r"^https?://", re.IGNORECASE)
_TAG_RE = re.compile(r"^[A-Za-z0-9\-_.!~*'()]+$")


@dataclass(frozen=True)
class DependencySpecifier:
    """A parsed dependency version specifier.

    Attributes:
        package_name: The dependency name as written in the manifest.
        version_specifier: The specifier; for workspace references the
            ``workspace:`` prefix is removed and the remainder trimmed.
        specifier_type: The classified kind.
        alias_target: For ``npm:`` aliases, the specifier of the real package.
    """

    package_name: str
    version_specifier: str
    specifier_type: DependencySpecifierType
    alias_target: Optional["DependencySpecifier"] = None

    @classmethod
    def parse(cls, package_name: str, version_specifier: str) -> "DependencySpecifier":
        """Parse ``version_specifier`` as requested for ``package_name``.

        Raises:
            MalformedSpecifier: The string matches no recognized syntax.
        """
        if version_specifier is None:
            raise MalformedSpecifier(package_name, "", "missing version specifier")
        raw = str(version_specifier)

        if raw.startswith(Constants.WORKSPACE_PROTOCOL):
            effective = raw[len(Constants.WORKSPACE_PROTOCOL):].strip()
            return cls(package_name, effective, DependencySpecifierType.WORKSPACE)

        spec = raw.strip()
        if spec.startswith(_ALIAS_PREFIX):
            return cls(
                package_name,
                raw,
                DependencySpecifierType.ALIAS,
                _parse_alias_target(package_name, spec[len(_ALIAS_PREFIX):]),
            )

        return cls(package_name, raw, _classify(package_name, spec))

    @property
    def is_semver(self) -> bool:
        return self.specifier_type in SEMVER_SPECIFIER_TYPES

    def __str__(self) -> str:
        return f"{self.package_name}@{self.version_specifier}"


def parse_specifier(package_name: str, version_specifier: str) -> DependencySpecifier:
    """Module-level shorthand for :meth:`DependencySpecifier.parse`."""
    return DependencySpecifier.parse(package_name, version_specifier)


def _classify(package_name: str, spec: str) -> DependencySpecifierType:
    if spec.startswith(_FILE_PREFIX) or _PATH_RE.match(spec):
        if _TARBALL_RE.search(spec):
            return DependencySpecifierType.FILE
        return DependencySpecifierType.DIRECTORY

    if _GIT_RE.match(spec) or _GIT_URL_RE.match(spec):
        return DependencySpecifierType.GIT

    if _REMOTE_RE.match(spec):
        return DependencySpecifierType.REMOTE

    if _GIT_SHORTHAND_RE.match(spec) and not spec.startswith("@"):
        return DependencySpecifierType.GIT

    if is_valid_version(spec):
        return DependencySpecifierType.VERSION

    if is_valid_range(spec):
        return DependencySpecifierType.RANGE

    if _TAG_RE.match(spec):
        return DependencySpecifierType.TAG

    raise MalformedSpecifier(package_name, spec, "unrecognized syntax")


def _parse_alias_target(package_name: str, target: str) -> DependencySpecifier:
    """Parse the ``<name>@<spec>`` portion of an ``npm:`` alias."""
    at_index = target.find("@", 1 if target.startswith("@") else 0)
    if at_index < 0:
        target_name, target_spec = target, ""
    else:
        target_name, target_spec = target[:at_index], target[at_index + 1:]

    if not target_name or target_name.startswith(_ALIAS_PREFIX):
        raise MalformedSpecifier(package_name, _ALIAS_PREFIX + target, "invalid alias target")

    try:
        nested = DependencySpecifier.parse(target_name, target_spec)
    except MalformedSpecifier as exc:
        raise MalformedSpecifier(
            package_name, _ALIAS_PREFIX + target, f"cannot parse alias target ({exc})"
        ) from exc

    if nested.specifier_type not in (
        DependencySpecifierType.VERSION,
        DependencySpecifierType.RANGE,
        DependencySpecifierType.TAG,
    ):
        raise MalformedSpecifier(
            package_name, _ALIAS_PREFIX + target, "aliases only work for registry dependencies"
        )
    return nested
