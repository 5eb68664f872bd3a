"""Flag files recording that an install completed with a given toolchain."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

from monolink.common.filesystem import delete_file, get_mtime, write_json
from monolink.constants import Constants

logger = logging.getLogger(__name__)


class InstallStateMarker:
    """A JSON flag file whose presence and content vouch for an install.

    The marker is valid only when the file exists and holds exactly the
    expected state, so changing the package manager or its version
    invalidates earlier installs.

    Args:
        folder: Folder the flag file lives in.
        state: Expected content, e.g. ``{"node": ..., "packageManager": ...}``.
        flag_name: File name of the flag.
    """

    def __init__(
        self,
        folder: str,
        state: Optional[Mapping[str, Any]] = None,
        flag_name: str = Constants.LAST_INSTALL_FLAG,
    ) -> None:
        self.path = os.path.join(folder, flag_name)
        self.state: Dict[str, Any] = dict(state or {})

    def is_valid(self) -> bool:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                saved = json.load(fh)
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring unreadable state marker %s: %s", self.path, exc)
            return False
        if saved != self.state:
            logger.debug("State marker %s does not match the current toolchain", self.path)
            return False
        return True

    def create(self) -> None:
        write_json(self.path, self.state)

    def clear(self) -> None:
        delete_file(self.path)

    @property
    def mtime(self) -> Optional[float]:
        return get_mtime(self.path)
