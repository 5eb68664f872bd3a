"""Filesystem helpers: links, conditional writes, and timestamp checks.

Link creation is funneled through :func:`create_link`, which picks the
strategy for the running OS in one place.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import subprocess
import sys
from enum import Enum
from typing import Any, Iterable, Optional

from monolink.common.logging_utils import extra_context, is_debug_enabled

logger = logging.getLogger(__name__)


class LinkKind(Enum):
    """What a link points at."""

    FILE = "file"
    DIRECTORY = "directory"


def _is_windows() -> bool:
    return sys.platform == "win32"


def create_link(kind: LinkKind, target: str, link_path: str, absolute: bool = False) -> None:
    """Create a link at ``link_path`` pointing to ``target``.

    On Windows, directories become junctions and files become hard links,
    since neither needs elevated privileges. Elsewhere a symlink is created,
    relative to the link's folder unless ``absolute`` is set.

    Args:
        kind: Whether the target is a file or a directory.
        target: The existing path the link should resolve to.
        link_path: Where the link is created; must not exist yet.
        absolute: Write absolute symlink targets on POSIX systems.
    """
    target = os.path.abspath(target)
    if is_debug_enabled(logger):
        logger.debug(
            "Creating link",
            extra=extra_context(
                event="create_link",
                component="filesystem",
                action=kind.value,
                target=target,
                link=link_path,
            ),
        )

    if _is_windows():
        if kind == LinkKind.DIRECTORY:
            _create_junction(target, link_path)
        else:
            os.link(target, link_path)
        return

    if absolute:
        link_target = target
    else:
        link_target = os.path.relpath(target, os.path.dirname(os.path.abspath(link_path)))
    os.symlink(link_target, link_path, target_is_directory=(kind == LinkKind.DIRECTORY))


def _create_junction(target: str, link_path: str) -> None:
    result = subprocess.run(
        ["cmd", "/c", "mklink", "/J", link_path, target],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise OSError(f"Unable to create junction {link_path} -> {target}: {result.stderr.strip()}")


def _is_link(path: str, mode: int) -> bool:
    if stat.S_ISLNK(mode):
        return True
    isjunction = getattr(os.path, "isjunction", None)
    return bool(isjunction and isjunction(path))


def delete_path(path: str) -> None:
    """Delete a file, link, or folder tree; links are removed without following them."""
    try:
        mode = os.lstat(path).st_mode
    except FileNotFoundError:
        return
    if _is_link(path, mode):
        if _is_windows() and stat.S_ISDIR(os.stat(path).st_mode):
            os.rmdir(path)
        else:
            os.unlink(path)
    elif stat.S_ISDIR(mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def ensure_folder(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def ensure_empty_folder(path: str) -> None:
    delete_path(path)
    os.makedirs(path)


def delete_file(path: str) -> None:
    """Delete ``path`` if it exists."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def read_text(path: str) -> Optional[str]:
    """Return the file contents, or None if it does not exist."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()
    except FileNotFoundError:
        return None


def write_text_if_changed(path: str, content: str) -> bool:
    """Write ``content`` unless the file already holds exactly that text.

    Returns:
        True if the file was written.
    """
    if read_text(path) == content:
        return False
    ensure_folder(os.path.dirname(os.path.abspath(path)))
    with open(path, "w", encoding="utf-8", newline="\n") as fh:
        fh.write(content)
    return True


def write_json(path: str, data: Any, only_if_changed: bool = False) -> bool:
    """Write ``data`` as indented JSON; returns True if the file was written."""
    content = json.dumps(data, indent=2, sort_keys=isinstance(data, dict)) + "\n"
    if only_if_changed:
        return write_text_if_changed(path, content)
    ensure_folder(os.path.dirname(os.path.abspath(path)))
    with open(path, "w", encoding="utf-8", newline="\n") as fh:
        fh.write(content)
    return True


def sync_file(source: str, destination: str) -> None:
    """Make ``destination`` a copy of ``source``, or delete it if the source is missing."""
    if os.path.isfile(source):
        ensure_folder(os.path.dirname(os.path.abspath(destination)))
        shutil.copyfile(source, destination)
    else:
        delete_file(destination)


def get_mtime(path: str) -> Optional[float]:
    try:
        return os.stat(path).st_mtime
    except FileNotFoundError:
        return None


def is_file_timestamp_current(reference_mtime: float, input_paths: Iterable[str]) -> bool:
    """Return False if any existing input was modified after ``reference_mtime``.

    Missing inputs are ignored.
    """
    for input_path in input_paths:
        input_mtime = get_mtime(input_path)
        if input_mtime is None:
            continue
        if input_mtime > reference_mtime:
            logger.debug("%s is newer than the last install", input_path)
            return False
    return True
