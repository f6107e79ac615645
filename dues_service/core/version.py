"""Build metadata reported by ``/system/version``."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from importlib import metadata

DISTRIBUTION_NAME = "resident-dues-service"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    git_sha: str
    build_time: str
    env: str


def _package_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        # Running from a source checkout that was never installed.
        return "0+unknown"


def _git_sha() -> str:
    sha = os.getenv("GIT_SHA")
    if sha:
        return sha
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short=12", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=2,
        )
    except (OSError, subprocess.SubprocessError):
        return "unknown"
    return result.stdout.strip() or "unknown"


@lru_cache
def get_version_info() -> VersionInfo:
    return VersionInfo(
        service=DISTRIBUTION_NAME,
        version=_package_version(),
        git_sha=_git_sha(),
        build_time=os.getenv("BUILD_TIME") or datetime.now(timezone.utc).isoformat(timespec="seconds"),
        env=os.getenv("APP_ENV", "development"),
    )
