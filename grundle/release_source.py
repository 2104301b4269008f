"""
Release lookup against GitHub-style release registries.

Queries the releases API for a repository and selects the release to
install with an explicit rule instead of trusting list order.
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable

from .common import GrundleError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
USER_AGENT = "grundle/1.0"


class SourceUnavailable(GrundleError):
    """Raised when the release registry cannot be reached or answers garbage."""
    pass


class ReleaseNotFound(GrundleError):
    """Raised when a repository has no eligible release."""
    pass


@dataclass(frozen=True)
class Asset:
    """
    A downloadable file attached to a release.

    Attributes:
        name: Asset file name
        download_url: Direct download URL
        size: Size in bytes as reported by the API (0 if unknown)
    """
    name: str
    download_url: str
    size: int = 0

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Asset | None:
        """Create Asset from API data, or None if required fields are missing."""
        name = data.get("name") or ""
        url = data.get("browser_download_url") or ""
        if not name or not url:
            return None
        try:
            size = int(data.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        return cls(name=name, download_url=url, size=size)


@dataclass(frozen=True)
class Release:
    """
    Snapshot of one tagged release.

    Attributes:
        tag_name: Version identifier
        assets: Downloadable assets in API order
        name: Release title
        draft: Whether the release is an unpublished draft
        prerelease: Whether the release is marked as a prerelease
        published_at: ISO-8601 publication timestamp ("" if unpublished)
    """
    tag_name: str
    assets: tuple[Asset, ...] = ()
    name: str = ""
    draft: bool = False
    prerelease: bool = False
    published_at: str = ""

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Release:
        """Create Release from API data."""
        assets = []
        for asset_data in data.get("assets") or []:
            asset = Asset.from_api_response(asset_data)
            if asset is not None:
                assets.append(asset)

        return cls(
            tag_name=data.get("tag_name") or "",
            assets=tuple(assets),
            name=data.get("name") or "",
            draft=bool(data.get("draft", False)),
            prerelease=bool(data.get("prerelease", False)),
            published_at=data.get("published_at") or data.get("created_at") or "",
        )


def select_release(releases: Iterable[Release], policy: str = "stable") -> Release | None:
    """
    Pick the release to install.

    Drafts and tagless entries are never eligible; with the "stable"
    policy prereleases are skipped as well. Eligible releases are ordered
    by publication time, newest first, with the tag name as tie-breaker,
    so the outcome does not depend on the order the API returned them in.

    Args:
        releases: Candidate releases
        policy: "stable" or "any"

    Returns:
        Selected release or None if nothing is eligible
    """
    eligible = [
        r for r in releases
        if r.tag_name and not r.draft and (policy == "any" or not r.prerelease)
    ]
    if not eligible:
        return None
    # ISO-8601 timestamps in UTC sort lexically
    eligible.sort(key=lambda r: (r.published_at, r.tag_name), reverse=True)
    return eligible[0]


def http_get(url: str, timeout: int = 30, headers: dict[str, str] | None = None) -> bytes:
    """Perform HTTP GET request.

    Args:
        url: URL to fetch
        timeout: Timeout in seconds
        headers: Optional HTTP headers

    Returns:
        Response body as bytes

    Raises:
        urllib.error.HTTPError: On HTTP error status
        SourceUnavailable: On transport failure
    """
    request_headers = {"User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)

    req = urllib.request.Request(url, headers=request_headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.read()
    except urllib.error.HTTPError:
        raise
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
        raise SourceUnavailable(f"Failed to fetch {url}: {e}") from e


class ReleaseSource(ABC):
    """Capability returning release metadata for a repository."""

    @abstractmethod
    def latest_release(self, owner: str, repo: str) -> Release:
        """
        Return the release to install for owner/repo.

        Raises:
            SourceUnavailable: On transport errors
            ReleaseNotFound: If no eligible release exists
        """


class GitHubReleaseSource(ReleaseSource):
    """ReleaseSource backed by the GitHub REST API."""

    def __init__(
        self,
        policy: str = "stable",
        per_page: int = 30,
        max_pages: int = 3,
        timeout: int = 30,
        token: str | None = None,
        api_url: str = GITHUB_API,
    ):
        self.policy = policy
        self.per_page = per_page
        self.max_pages = max_pages
        self.timeout = timeout
        self.token = token if token is not None else os.environ.get("GITHUB_TOKEN")
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def list_releases(self, owner: str, repo: str, page: int = 1) -> list[Release]:
        """
        Fetch one page of releases.

        Args:
            owner: Repository owner
            repo: Repository name
            page: 1-based page number

        Returns:
            Releases on that page, in API order

        Raises:
            SourceUnavailable: On transport, HTTP or decoding errors
            ReleaseNotFound: If the repository does not exist
        """
        query = urllib.parse.urlencode({"per_page": self.per_page, "page": page})
        url = (
            f"{self.api_url}/repos/{urllib.parse.quote(owner)}/"
            f"{urllib.parse.quote(repo)}/releases?{query}"
        )
        logger.debug(f"Listing releases: {url}")

        try:
            body = http_get(url, timeout=self.timeout, headers=self._headers())
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise ReleaseNotFound(f"Repository {owner}/{repo} not found") from e
            remediation = None
            if e.code in (403, 429):
                remediation = "Set GITHUB_TOKEN to raise the API rate limit"
            raise SourceUnavailable(
                f"GitHub API returned HTTP {e.code} for {owner}/{repo}",
                remediation=remediation,
            ) from e

        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SourceUnavailable(f"Malformed release data for {owner}/{repo}: {e}") from e

        if not isinstance(data, list):
            raise SourceUnavailable(f"Unexpected release data for {owner}/{repo}")

        return [Release.from_api_response(item) for item in data if isinstance(item, dict)]

    def latest_release(self, owner: str, repo: str) -> Release:
        seen: list[Release] = []
        for page in range(1, self.max_pages + 1):
            releases = self.list_releases(owner, repo, page)
            seen.extend(releases)

            selected = select_release(seen, self.policy)
            if selected is not None:
                logger.debug(f"GitHub {owner}/{repo}: selected {selected.tag_name} (page {page})")
                return selected

            if len(releases) < self.per_page:
                break

        if not seen:
            raise ReleaseNotFound(f"{owner}/{repo} has no releases")
        raise ReleaseNotFound(
            f"{owner}/{repo} has no {self.policy} release",
            remediation="Set release_policy: any to allow prereleases" if self.policy == "stable" else None,
        )
