"""Error taxonomy for the install and link engine."""

from __future__ import annotations

from typing import Optional


class MonolinkError(RuntimeError):
    """Base class for every error raised by the engine."""


class AlreadyReportedError(MonolinkError):
    """The failure was already explained to the user; outer layers stay quiet."""

    def __init__(self, message: str = "An error occurred.") -> None:
        super().__init__(message)


class ConfigurationError(MonolinkError):
    """A repository or common-versions configuration file is invalid."""


class MalformedSpecifier(MonolinkError, ValueError):
    """A dependency version specifier cannot be parsed."""

    def __init__(self, package_name: str, version_specifier: str, reason: str = "") -> None:
        self.package_name = package_name
        self.version_specifier = version_specifier
        detail = f": {reason}" if reason else ""
        super().__init__(
            f'Invalid version specifier "{version_specifier}" for dependency "{package_name}"{detail}'
        )


class CorruptLockfile(MonolinkError):
    """A lockfile exists on disk but cannot be parsed."""

    def __init__(self, path: str, cause: Exception) -> None:
        self.path = path
        first_line = (str(cause).strip().splitlines() or [type(cause).__name__])[0]
        super().__init__(
            f'Error reading "{path}": {first_line}. '
            'Run "monolink update --full" to regenerate it.'
        )


class StaleLockfile(MonolinkError):
    """The lockfile parses but does not satisfy the current dependency requests."""


class AmbiguousPreference(ConfigurationError):
    """A dependency is pinned in both explicit preferred-version tables."""


class ExternalToolFailure(MonolinkError):
    """The package manager subprocess exited with a non-zero status."""

    def __init__(self, command: str, returncode: Optional[int], attempts: int = 1) -> None:
        self.command = command
        self.returncode = returncode
        self.attempts = attempts
        super().__init__(
            f'The command failed after {attempts} attempt(s) with exit code {returncode}:\n  {command}'
        )


class NetworkProbeFailure(MonolinkError):
    """A best-effort network check could not reach its server."""


class LockContention(MonolinkError):
    """Another process held an install lock past the caller's timeout."""


class DuplicateChildError(ValueError):
    """A virtual package node already owns a child with the same name."""


class AlreadyParentedError(ValueError):
    """A virtual package node was attached to a second parent."""
