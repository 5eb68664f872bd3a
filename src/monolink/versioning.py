"""Semantic version helpers using npm range semantics."""

from __future__ import annotations

import re
from typing import Iterable, Optional

import semantic_version

_ANY_RANGE = {"", "*", "x", "X"}


def parse_version(version: str) -> Optional[semantic_version.Version]:
    """Parse an exact version the way npm does, tolerating a leading ``v`` or ``=``.

    Returns:
        The parsed version, or None if the string is not an exact semver.
    """
    if not isinstance(version, str):
        return None
    candidate = version.strip()
    if candidate[:1] in ("v", "="):
        candidate = candidate[1:]
    try:
        return semantic_version.Version(candidate)
    except ValueError:
        return None


def is_valid_version(version: str) -> bool:
    """Return True if ``version`` is an exact semantic version."""
    return parse_version(version) is not None


def _normalize_range(spec_str: str) -> str:
    """Normalize npm range syntax (hyphen, x-ranges) into SimpleSpec-compatible form."""
    s = spec_str.strip()

    # Hyphen ranges: "1.2.3 - 1.4.5" => ">=1.2.3,<=1.4.5"
    m = re.match(r"^\s*([0-9A-Za-z\.\-\+]+)\s+-\s+([0-9A-Za-z\.\-\+]+)\s*$", s)
    if m:
        return f">={m.group(1)},<={m.group(2)}"

    s2 = s.replace("*", "x").lower()
    m = re.match(r"^\s*(\d+)\.(\d+)\.x\s*$", s2)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        return f">={major}.{minor}.0,<{major}.{minor + 1}.0"

    m = re.match(r"^\s*(\d+)(\.x)?\s*$", s2)
    if m:
        major = int(m.group(1))
        return f">={major}.0.0,<{major + 1}.0.0"

    # Space separated comparators become comma separated
    return ",".join(part for part in re.split(r"\s+", s) if part)


def parse_range(range_str: str):
    """Parse an npm-style range.

    Returns:
        A semantic_version spec object, or None when the range is not valid.
    """
    if not isinstance(range_str, str):
        return None
    stripped = range_str.strip()
    if stripped in _ANY_RANGE:
        stripped = ">=0.0.0"
    try:
        return semantic_version.NpmSpec(stripped)
    except ValueError:
        try:
            return semantic_version.SimpleSpec(_normalize_range(stripped))
        except ValueError:
            return None


def is_valid_range(range_str: str) -> bool:
    """Return True if ``range_str`` is a parseable semver range."""
    return parse_range(range_str) is not None


def satisfies(version: str, range_str: str) -> bool:
    """Return True if the exact ``version`` satisfies the npm ``range_str``."""
    parsed_version = parse_version(version)
    if parsed_version is None:
        return False
    spec = parse_range(range_str)
    if spec is None:
        return False
    return spec.match(parsed_version)


def max_satisfying(versions: Iterable[str], range_str: str) -> Optional[str]:
    """Pick the highest version satisfying the range, keeping its original spelling."""
    spec = parse_range(range_str)
    if spec is None:
        return None
    best: Optional[str] = None
    best_parsed: Optional[semantic_version.Version] = None
    for version in versions:
        parsed = parse_version(version)
        if parsed is None or not spec.match(parsed):
            continue
        if best_parsed is None or parsed > best_parsed:
            best, best_parsed = version, parsed
    return best
