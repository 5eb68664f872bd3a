"""yarn.lock support.

The engine treats yarn lockfiles as opaque: it can check whether an exact
``name@range`` pattern is present and enumerate temp projects, but it does
not interpret or rewrite resolutions. Saving writes the original text back.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from monolink.constants import PackageManagers
from monolink.errors import CorruptLockfile
from monolink.shrinkwrap.base import ShrinkwrapFile, temp_project_names_from_keys
from monolink.specifier import DependencySpecifier

logger = logging.getLogger(__name__)

# "js-tokens@^3.0.0 || ^4.0.0" -> ("js-tokens", "^3.0.0 || ^4.0.0")
_PATTERN_RE = re.compile(r"^(@?[^@\s]+)(?:@(.*))?$")


def decode_pattern(pattern: str) -> Optional[tuple]:
    """Split a yarn.lock lookup pattern into package name and range."""
    match = _PATTERN_RE.match(pattern.strip().strip('"'))
    if not match:
        return None
    return match.group(1), match.group(2) or ""


class YarnShrinkwrapFile(ShrinkwrapFile):
    """A parsed yarn.lock, answering only exact-pattern queries."""

    package_manager = PackageManagers.YARN

    def __init__(self, entries: Dict[str, Any], raw_text: str = "") -> None:
        super().__init__()
        self._raw_text = raw_text
        self._patterns: Dict[str, Any] = {}
        for key, value in (entries or {}).items():
            for pattern in str(key).split(","):
                pattern = pattern.strip().strip('"')
                if pattern:
                    self._patterns[pattern] = value

        names = set()
        for pattern in self._patterns:
            decoded = decode_pattern(pattern)
            if decoded:
                names.add(decoded[0])
        self._temp_project_names = temp_project_names_from_keys(names)

    @classmethod
    def load(cls, path: str) -> Optional["YarnShrinkwrapFile"]:
        """Load the file at ``path``; None if it does not exist.

        Raises:
            CorruptLockfile: yarnlock cannot parse the file.
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return None
        from yarnlock import yarnlock_parse

        try:
            parsed = yarnlock_parse(content)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise CorruptLockfile(path, exc) from exc
        if not isinstance(parsed, dict):
            raise CorruptLockfile(path, ValueError("expected a mapping of lookup patterns"))
        return cls(parsed, content)

    def get_temp_project_names(self) -> List[str]:
        return list(self._temp_project_names)

    def has_compatible_top_level_dependency(self, specifier: DependencySpecifier) -> bool:
        # yarn does not normalize patterns, so neither do we.
        return f"{specifier.package_name}@{specifier.version_specifier}" in self._patterns

    def try_ensure_compatible_dependency(self, specifier: DependencySpecifier, consumer_key: str) -> bool:
        return self.has_compatible_top_level_dependency(specifier)

    def get_top_level_dependency_version(self, dependency_name: str) -> Optional[DependencySpecifier]:
        logger.debug("Top-level version lookup is unsupported for yarn.lock")
        return None

    def try_ensure_dependency_version(
        self, specifier: DependencySpecifier, consumer_key: str
    ) -> Optional[DependencySpecifier]:
        logger.debug("Per-project version lookup is unsupported for yarn.lock")
        return None

    def serialize(self) -> str:
        return self._raw_text
