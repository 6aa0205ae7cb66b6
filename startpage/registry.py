# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Release Registry

Queries the upstream GitHub repository for the latest tag, the manifest
published at that tag, its release notes and the files changed between two
tags.

The tag list, manifest and release queries are independent: a missing
manifest or release never invalidates the tag found in the list.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from . import __version__

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_RAW_BASE = "https://raw.githubusercontent.com"
REQUEST_TIMEOUT = 30  # seconds


class RegistryError(Exception):
    """Raised when a registry query fails."""
    pass


@dataclass(frozen=True)
class ReleaseInfo:
    """Latest published release. Never persisted."""
    version: str
    tag_name: str
    patch: int = 0
    notes: str = ""
    published_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReleaseRegistry:
    """Client for the GitHub tags, contents, releases and compare APIs.

    Usage:
        registry = ReleaseRegistry("owner", "repo")
        release = await registry.latest_release()
        files = await registry.changed_files("v1.0.0", "v1.1.0")
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        api_base: str = GITHUB_API_BASE,
        raw_base: str = GITHUB_RAW_BASE,
        token: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        tag_prefix: str = "v",
        manifest_file: str = "package.json",
        patch_key: str = "patchVersion",
    ):
        self.owner = owner
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.raw_base = raw_base.rstrip("/")
        self.token = token or os.environ.get("GITHUB_TOKEN")
        self.timeout = timeout
        self.tag_prefix = tag_prefix
        self.manifest_file = manifest_file
        self.patch_key = patch_key

    @property
    def repo_url(self) -> str:
        return f"{self.api_base}/repos/{self.owner}/{self.repo}"

    def tag_for(self, version: str) -> str:
        """Tag name of a dotted version."""
        return f"{self.tag_prefix}{version}"

    def version_for(self, tag: str) -> str:
        """Dotted version of a tag name."""
        if self.tag_prefix and tag.startswith(self.tag_prefix):
            return tag[len(self.tag_prefix):]
        return tag

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def latest_release(self) -> Optional[ReleaseInfo]:
        """Fetch the most recent tag with its patch counter and release notes.

        Returns None when no tag is known (empty list or failed request).
        """
        async with aiohttp.ClientSession() as session:
            try:
                tags = await self._request_json(session, f"{self.repo_url}/tags")
            except RegistryError as e:
                logger.warning("Could not list tags: %s", e)
                return None

            if not isinstance(tags, list) or not tags:
                logger.info("No tags found for %s/%s", self.owner, self.repo)
                return None

            tag = tags[0].get("name", "") if isinstance(tags[0], dict) else ""
            if not tag:
                logger.warning("Latest tag entry has no name")
                return None

            patch = await self._fetch_patch(session, tag)
            notes, published_at = await self._fetch_release_notes(session, tag)

        return ReleaseInfo(
            version=self.version_for(tag),
            tag_name=tag,
            patch=patch,
            notes=notes,
            published_at=published_at,
        )

    async def changed_files(self, base_tag: str, head_tag: str) -> List[str]:
        """List the file paths changed between two tags.

        Raises:
            RegistryError: If the compare query fails.
        """
        url = f"{self.repo_url}/compare/{base_tag}...{head_tag}"
        async with aiohttp.ClientSession() as session:
            data = await self._request_json(session, url)

        if not isinstance(data, dict):
            raise RegistryError(f"Unexpected compare response for {base_tag}...{head_tag}")
        return [f["filename"] for f in data.get("files") or [] if f.get("filename")]

    # =========================================================================
    # BEST-EFFORT QUERIES
    # =========================================================================

    async def _fetch_patch(self, session: aiohttp.ClientSession, tag: str) -> int:
        """Read the patch counter from the manifest at tag, 0 on failure."""
        url = f"{self.raw_base}/{self.owner}/{self.repo}/{tag}/{self.manifest_file}"
        try:
            manifest = await self._request_json(session, url)
            return max(int(manifest.get(self.patch_key) or 0), 0)
        except (RegistryError, AttributeError, TypeError, ValueError) as e:
            logger.debug("Patch counter unavailable for %s: %s", tag, e)
            return 0

    async def _fetch_release_notes(
        self,
        session: aiohttp.ClientSession,
        tag: str,
    ) -> Tuple[str, Optional[str]]:
        """Read release notes and publish date for tag, empty on failure."""
        try:
            release = await self._request_json(session, f"{self.repo_url}/releases/tags/{tag}")
            return release.get("body") or "", release.get("published_at") or None
        except (RegistryError, AttributeError) as e:
            logger.debug("Release notes unavailable for %s: %s", tag, e)
            return "", None

    # =========================================================================
    # HTTP
    # =========================================================================

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for GitHub API requests."""
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"Startpage/{__version__}",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        """GET url and decode the JSON body.

        Raises:
            RegistryError: On connection errors, timeouts, non-2xx statuses
                or undecodable bodies.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.get(url, headers=self._get_headers(), timeout=timeout) as resp:
                if resp.status >= 400:
                    raise RegistryError(f"GET {url} returned {resp.status}")
                # raw.githubusercontent.com serves JSON as text/plain
                return await resp.json(content_type=None)
        except RegistryError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RegistryError(f"GET {url} failed: {e}") from e
