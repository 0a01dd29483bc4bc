"""GitHub API client for tiergate.

Only what ingress needs: the changed files of a pull request, so that path
exclusion and path-based selection apply to proposed changes the same way
they apply to pushes (a push delivery lists its paths, a pull_request
delivery does not).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"

# GitHub serves at most 3000 files per pull request, 100 per page
_FILES_PER_PAGE = 100
_MAX_FILE_PAGES = 30


class GitHubClient:
    """Async GitHub API client with optional token authentication."""

    def __init__(self, *, token: str | None = None, base_url: str = GITHUB_API):
        self._token = token
        self._base_url = base_url
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "tiergate/0.1.0",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(base_url=self._base_url, headers=headers, timeout=30.0)
        logger.info("GitHub client started (authenticated=%s)", bool(self._token))

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        resp = await self.client.request(method, path, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    async def list_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[str]:
        """Paths touched by a pull request, following pagination.

        Renamed files contribute both their old and new path.

        Raises:
            httpx.HTTPError: the API could not be reached or refused the request.
        """
        paths: set[str] = set()
        for page in range(1, _MAX_FILE_PAGES + 1):
            resp = await self._request(
                "GET",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/files",
                params={"per_page": _FILES_PER_PAGE, "page": page},
            )
            files = resp.json()
            for entry in files:
                paths.add(entry["filename"])
                if entry.get("previous_filename"):
                    paths.add(entry["previous_filename"])
            if len(files) < _FILES_PER_PAGE:
                break
        return sorted(paths)
