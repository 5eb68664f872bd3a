"""npm-shrinkwrap.json support."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from monolink.constants import PackageManagers
from monolink.errors import CorruptLockfile
from monolink.shrinkwrap.base import ShrinkwrapFile, temp_project_names_from_keys
from monolink.specifier import DependencySpecifier

logger = logging.getLogger(__name__)


class NpmShrinkwrapFile(ShrinkwrapFile):
    """A nested dependency tree as written by ``npm shrinkwrap``.

    Example::

        {
          "name": "monolink-common",
          "version": "0.0.0",
          "dependencies": {
            "@monolink-temp/app": {
              "version": "file:projects/app.tgz",
              "dependencies": {"jquery": {"version": "2.2.4"}}
            },
            "q": {"version": "1.5.3"}
          }
        }
    """

    package_manager = PackageManagers.NPM

    def __init__(self, shrinkwrap_json: Dict[str, Any]) -> None:
        super().__init__()
        self._shrinkwrap_json = shrinkwrap_json
        if not isinstance(self._shrinkwrap_json.get("dependencies"), dict):
            self._shrinkwrap_json["dependencies"] = {}

    @classmethod
    def load(cls, path: str) -> Optional["NpmShrinkwrapFile"]:
        """Load the file at ``path``; None if it does not exist.

        Raises:
            CorruptLockfile: The file exists but is not a JSON object.
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(content) if content.strip() else {}
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object at the top level")
        except ValueError as exc:
            raise CorruptLockfile(path, exc) from exc
        logger.debug("Loaded npm shrinkwrap %s", path)
        return cls(data)

    @property
    def dependencies(self) -> Dict[str, Any]:
        return self._shrinkwrap_json["dependencies"]

    def get_temp_project_names(self) -> List[str]:
        return temp_project_names_from_keys(self.dependencies.keys())

    def get_top_level_dependency_version(self, dependency_name: str) -> Optional[DependencySpecifier]:
        entry = self.dependencies.get(dependency_name)
        if not isinstance(entry, dict) or not entry.get("version"):
            return None
        return DependencySpecifier.parse(dependency_name, str(entry["version"]))

    def try_ensure_dependency_version(
        self, specifier: DependencySpecifier, consumer_key: str
    ) -> Optional[DependencySpecifier]:
        """Look under the temp project first, then fall back to the root of the tree.

        npm hoists whatever it can, so a dependency missing below the temp
        project is found at the top level at install time; nothing is rewritten.
        """
        entry: Optional[Dict[str, Any]] = None
        temp_project = self.dependencies.get(consumer_key)
        if isinstance(temp_project, dict):
            entry = (temp_project.get("dependencies") or {}).get(specifier.package_name)
        if entry is None:
            entry = self.dependencies.get(specifier.package_name)
        if not isinstance(entry, dict) or not entry.get("version"):
            return None
        return DependencySpecifier.parse(specifier.package_name, str(entry["version"]))

    def serialize(self) -> str:
        return json.dumps(self._shrinkwrap_json, indent=2, sort_keys=True) + "\n"

    def to_dict(self) -> Dict[str, Any]:
        return self._shrinkwrap_json
