"""Fast removal of large folders such as ``node_modules``.

Folders are first renamed into a recycler folder on the same volume, which
is instant, and then deleted in one pass when the recycler is flushed.
"""

from __future__ import annotations

import logging
import os
import shutil
import time

from monolink.common.filesystem import delete_path, ensure_folder

logger = logging.getLogger(__name__)


class Recycler:
    """Collects folders to delete and removes them on :meth:`delete_all`.

    As a context manager the recycler always flushes on exit, even when the
    body raised.
    """

    def __init__(self, recycler_folder: str) -> None:
        self.recycler_folder = recycler_folder
        self._counter = 0

    def move_folder(self, folder: str) -> None:
        """Move ``folder`` into the recycler; missing folders are ignored."""
        if not os.path.lexists(folder):
            return
        ensure_folder(self.recycler_folder)
        self._counter += 1
        destination = os.path.join(self.recycler_folder, f"{int(time.time() * 1000)}-{self._counter}")
        try:
            os.rename(folder, destination)
        except OSError as exc:
            # Renames fail across volumes; delete in place instead.
            logger.debug("Unable to move %s to the recycler (%s); deleting it directly", folder, exc)
            delete_path(folder)
            return
        logger.debug("Moved %s to %s", folder, destination)

    def delete_all(self) -> None:
        """Delete everything in the recycler folder."""
        if not os.path.isdir(self.recycler_folder):
            return
        for entry in os.listdir(self.recycler_folder):
            path = os.path.join(self.recycler_folder, entry)
            try:
                delete_path(path)
            except OSError as exc:
                logger.warning("Unable to delete %s: %s", path, exc)
        shutil.rmtree(self.recycler_folder, ignore_errors=True)

    def __enter__(self) -> "Recycler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.delete_all()
