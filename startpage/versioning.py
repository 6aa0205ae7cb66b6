# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Version Handling

Reads the deployed version from the local manifest and compares dotted
version strings. A release is identified by its dotted version plus an
independent patch counter that is published in the manifest at each tag.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"


@dataclass(frozen=True)
class VersionIdentifier:
    """Dotted version plus the patch counter published alongside it."""
    version: str
    patch: int = 0

    def __str__(self) -> str:
        if self.patch:
            return f"{self.version} (patch {self.patch})"
        return self.version


# =============================================================================
# VERSION COMPARISON
# =============================================================================

def parse_version(version_str: str) -> Tuple[int, ...]:
    """Parse a version string into a tuple of integer components.

    Strips a leading 'v' and any pre-release suffix ('-rc1'). Components
    that are not integers count as zero, so "unknown" parses as (0,).
    """
    clean = version_str.strip().lstrip("v")
    base = clean.split("-")[0]
    parts = []
    for part in base.split("."):
        try:
            parts.append(max(int(part), 0))
        except ValueError:
            parts.append(0)
    return tuple(parts)


def compare_versions(a: str, b: str) -> int:
    """Compare two dotted versions.

    Returns 1 if a > b, -1 if a < b and 0 if equal. Missing trailing
    components compare as zero, so "1.2" equals "1.2.0". A result of 0 says
    nothing about the patch counters; see has_update().
    """
    parts_a = parse_version(a)
    parts_b = parse_version(b)
    length = max(len(parts_a), len(parts_b))
    parts_a += (0,) * (length - len(parts_a))
    parts_b += (0,) * (length - len(parts_b))

    for left, right in zip(parts_a, parts_b):
        if left > right:
            return 1
        if left < right:
            return -1
    return 0


def has_update(current: VersionIdentifier, latest: VersionIdentifier) -> bool:
    """Check if latest is newer than current, breaking ties on the patch counter."""
    result = compare_versions(latest.version, current.version)
    return result > 0 or (result == 0 and latest.patch > current.patch)


# =============================================================================
# VERSION READER
# =============================================================================

def read_current_version(
    deployment_dir: Path,
    manifest_file: str = "package.json",
    patch_key: str = "patchVersion",
) -> VersionIdentifier:
    """Read the deployed version from the manifest in deployment_dir.

    Never raises: an unreadable or malformed manifest yields
    VersionIdentifier("unknown", 0).
    """
    manifest_path = Path(deployment_dir) / manifest_file
    try:
        with open(manifest_path, encoding="utf-8") as f:
            data = json.load(f)
        version = data.get("version") or UNKNOWN_VERSION
        raw_patch = data.get(patch_key)
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.debug("Could not read version from %s: %s", manifest_path, e)
        return VersionIdentifier(version=UNKNOWN_VERSION, patch=0)

    try:
        patch = max(int(raw_patch or 0), 0)
    except (ValueError, TypeError):
        logger.debug("Ignoring invalid %s %r in %s", patch_key, raw_patch, manifest_path)
        patch = 0
    return VersionIdentifier(version=str(version), patch=patch)
