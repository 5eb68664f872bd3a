"""Best-effort check that the running tool release is still published."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Optional

import requests

from monolink.common.filesystem import write_json
from monolink.common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from monolink.constants import Constants
from monolink.errors import NetworkProbeFailure

logger = logging.getLogger(__name__)

_ERROR = "error"
_PACKUMENT_ACCEPT = "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"


def _read_cached_result(flag_path: str) -> Any:
    """Return the cached value, or None when absent, stale, or unreadable."""
    try:
        age = time.time() - os.stat(flag_path).st_mtime
    except FileNotFoundError:
        return None
    if age >= Constants.RELEASE_CHECK_TTL_SEC:
        return None
    try:
        with open(flag_path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError):
        return None


def query_if_release_is_published(
    registry_url: str,
    package_name: str,
    version: str,
) -> bool:
    """Ask the registry whether ``package_name@version`` can still be downloaded.

    Raises:
        NetworkProbeFailure: The registry could not be reached or answered
            with something unexpected.
    """
    query_url = registry_url.rstrip("/") + "/" + package_name.replace("/", "%2F")
    safe_target = safe_url(query_url)
    with Timer() as t:
        try:
            res = requests.get(
                query_url, headers={"Accept": _PACKUMENT_ACCEPT}, timeout=Constants.REQUEST_TIMEOUT
            )
        except requests.Timeout as exc:
            raise NetworkProbeFailure(f"Request to {safe_target} timed out") from exc
        except requests.RequestException as exc:
            raise NetworkProbeFailure(f"Unable to reach {safe_target}: {exc}") from exc
    if is_debug_enabled(logger):
        logger.debug(
            "Release check response",
            extra=extra_context(
                event="http_response",
                component="release_check",
                action="GET",
                status_code=res.status_code,
                duration_ms=t.duration_ms(),
                target=safe_target,
            ),
        )
    if res.status_code != 200:
        raise NetworkProbeFailure(f"Failed to query {safe_target}: HTTP {res.status_code}")

    try:
        versions = res.json()["versions"]
        if version not in versions:
            return False
        tarball_url = versions[version]["dist"]["tarball"]
    except (ValueError, KeyError, TypeError) as exc:
        raise NetworkProbeFailure(f"Error parsing response from {safe_target}") from exc
    if not tarball_url:
        raise NetworkProbeFailure(f"No tarball URL for {package_name}@{version}")

    # The version can remain listed after its tarball was removed.
    try:
        tarball_res = requests.head(tarball_url, timeout=Constants.REQUEST_TIMEOUT, allow_redirects=True)
    except requests.RequestException as exc:
        raise NetworkProbeFailure(f"Unable to reach {safe_url(tarball_url)}: {exc}") from exc
    if tarball_res.status_code == 404:
        return False
    if tarball_res.status_code >= 400:
        raise NetworkProbeFailure(f"Failed to fetch {safe_url(tarball_url)}: HTTP {tarball_res.status_code}")
    return True


def check_if_release_is_published(
    flag_folder: str,
    version: str,
    registry_url: str = Constants.REGISTRY_URL_NPM,
    package_name: str = Constants.TOOL_PACKAGE_NAME,
) -> Optional[bool]:
    """Return whether this release is published, or None when unknown.

    Results are cached for a day in ``last-check.flag`` under
    ``flag_folder``. A failure is cached as well, so an offline machine
    does not retry on every run.
    """
    flag_path = os.path.join(flag_folder, Constants.LAST_CHECK_FLAG)
    cached = _read_cached_result(flag_path)
    if cached == _ERROR:
        logger.debug("Skipping release check; the last attempt failed recently")
        return None
    if isinstance(cached, bool):
        return cached

    # Recorded first, so a crash during the query also counts as a failure.
    write_json(flag_path, _ERROR)
    try:
        published = query_if_release_is_published(registry_url, package_name, version)
    except NetworkProbeFailure as exc:
        logger.debug("Release check failed: %s", exc)
        write_json(flag_path, _ERROR)
        return None
    write_json(flag_path, published)
    return published
