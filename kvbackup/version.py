"""Build information and argument logging."""

from __future__ import annotations

import argparse
import logging

log = logging.getLogger(__name__)

RELEASE_VERSION = "None"
BUILD_TS = "None"
GIT_HASH = "None"
GIT_BRANCH = "None"
RACE_ENABLED = False


def version_info() -> dict[str, object]:
    """Return the build information as a mapping."""
    return {
        "release-version": RELEASE_VERSION,
        "git-hash": GIT_HASH,
        "git-branch": GIT_BRANCH,
        "utc-build-time": BUILD_TS,
        "race-enabled": RACE_ENABLED,
    }


def log_info() -> None:
    """Log the build information."""
    log.info("Welcome to Backup & Restore")
    for key, value in version_info().items():
        log.info("%s=%s", key, value)


def print_info() -> str:
    """Print the build information to standard output and return the text."""
    lines = [
        f"Release Version: {RELEASE_VERSION}",
        f"Git Commit Hash: {GIT_HASH}",
        f"Git Branch: {GIT_BRANCH}",
        f"UTC Build Time:  {BUILD_TS}",
        f"Race Enabled:  {str(RACE_ENABLED).lower()}",
    ]
    text = "\n".join(lines)
    print(text)
    return text


def log_arguments(args: argparse.Namespace) -> dict[str, str]:
    """Log every parsed argument, sorted by name, and return them."""
    fields = {name: str(value) for name, value in sorted(vars(args).items())}
    log.info("arguments %s", " ".join(f"{k}={v}" for k, v in fields.items()))
    return fields