"""HTTP client for the GitHub contents API.

This module provides:
- GitHubStorage: Async bridge over a single repository branch
- RemoteFile, RemoteEntry: File and directory listing results
- APIError and subclasses: Error taxonomy for remote failures

Every write is conditional on the SHA the caller last observed. A rejected
write raises VersionConflictError and is never retried here. Reading a
missing path returns None rather than raising.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from gitgallery.core.config import GitHubConfig, RepoInfo

logger = logging.getLogger(__name__)

EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
API_VERSION = "2022-11-28"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Token missing, invalid or lacking repository access."""


class NotFoundError(APIError):
    """Resource not found."""


class VersionConflictError(APIError):
    """Conditional write rejected because the remote SHA moved."""


class TransientNetworkError(APIError):
    """Request failed in a way that may succeed when repeated."""


@dataclass
class RemoteFile:
    """A file read from the repository.

    Attributes:
        path: Repository path.
        sha: Blob SHA of the current version.
        content: Decoded file bytes.
        size: Size in bytes.
    """

    path: str
    sha: str
    content: bytes
    size: int

    def text(self) -> str:
        """Content decoded as UTF-8."""
        return self.content.decode("utf-8")


@dataclass
class RemoteEntry:
    """One item of a directory listing."""

    name: str
    path: str
    type: str  # "file" or "dir"
    sha: str
    size: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteEntry:
        """Create from API response dictionary."""
        return cls(
            name=data["name"],
            path=data["path"],
            type=data.get("type", "file"),
            sha=data.get("sha", ""),
            size=data.get("size") or 0,
        )


def _decode_base64(content: str) -> bytes:
    # The API wraps base64 payloads at 60 columns
    return base64.b64decode("".join(content.split()))


class GitHubStorage:
    """Async client for one repository branch.

    Usage:
        async with GitHubStorage(config, repo) as storage:
            current = await storage.get_file("gitgallery/meta/manifest.json")
            sha = await storage.put_file(path, data, "Update", sha=current.sha)
    """

    def __init__(
        self,
        config: GitHubConfig,
        repo: RepoInfo,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the storage bridge.

        Args:
            config: API connection settings.
            repo: Repository and branch to operate on.
            client: Optional pre-built client (tests inject one).
        """
        self.config = config
        self.repo = repo
        self._client = client or httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout,
            headers={
                "Authorization": f"Bearer {config.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
            },
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> GitHubStorage:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.aclose()

    @property
    def _repo_url(self) -> str:
        return f"/repos/{self.repo.owner}/{self.repo.name}"

    def _contents_url(self, path: str) -> str:
        return f"{self._repo_url}/contents/{quote(path.lstrip('/'), safe='/')}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

    def _handle_response(self, response: httpx.Response, write: bool = False) -> httpx.Response:
        """Map error status codes to exceptions."""
        status = response.status_code
        if status < 400:
            return response
        detail = _error_message(response)
        if status == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if status == 403 and "rate limit" in detail.lower():
            raise TransientNetworkError(detail, 403)
        if status == 403:
            raise AuthenticationError(detail, 403)
        if status == 404:
            raise NotFoundError(detail, 404)
        if status == 409 or (write and status == 422):
            raise VersionConflictError(detail, status)
        if status == 429 or status >= 500:
            raise TransientNetworkError(detail, status)
        raise APIError(detail, status)

    # === Reads ===

    async def _get_contents(self, path: str) -> Any | None:
        response = await self._request(
            "GET", self._contents_url(path), params={"ref": self.repo.branch}
        )
        if response.status_code == 404:
            logger.debug(f"Not found on remote: {path}")
            return None
        return self._handle_response(response).json()

    async def get_file(self, path: str) -> RemoteFile | None:
        """Read a file.

        Args:
            path: Repository path.

        Returns:
            RemoteFile, or None if the path does not exist (or is a directory).
        """
        data = await self._get_contents(path)
        if data is None or isinstance(data, list):
            return None
        sha = data.get("sha", "")
        content = data.get("content")
        if content and data.get("encoding") == "base64":
            raw = _decode_base64(content)
        elif sha:
            # Files over the inline limit come back without content
            raw = await self._get_blob(sha)
            if raw is None:
                return None
        else:
            return None
        return RemoteFile(path=path, sha=sha, content=raw, size=data.get("size") or len(raw))

    async def _get_blob(self, sha: str) -> bytes | None:
        response = await self._request("GET", f"{self._repo_url}/git/blobs/{sha}")
        if response.status_code == 404:
            return None
        data = self._handle_response(response).json()
        if not data.get("content") or data.get("encoding") != "base64":
            return None
        return _decode_base64(data["content"])

    async def get_file_sha(self, path: str) -> str | None:
        """Get the current SHA of a file, or None if it does not exist."""
        data = await self._get_contents(path)
        if data is None or isinstance(data, list):
            return None
        return data.get("sha") or None

    async def list_directory(self, path: str) -> list[RemoteEntry] | None:
        """List a directory, or None if it does not exist."""
        data = await self._get_contents(path)
        if data is None:
            return None
        if not isinstance(data, list):
            return []
        return [RemoteEntry.from_dict(item) for item in data]

    # === Writes ===

    async def put_file(
        self,
        path: str,
        content: bytes,
        message: str,
        sha: str | None = None,
    ) -> str:
        """Create or replace a file.

        Args:
            path: Repository path.
            content: Raw file bytes.
            message: Commit message.
            sha: SHA last observed for the path (None to create).

        Returns:
            SHA of the new version.

        Raises:
            VersionConflictError: If the remote version no longer matches sha.
        """
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.repo.branch,
        }
        if sha:
            body["sha"] = sha
        response = await self._request("PUT", self._contents_url(path), json=body)
        data = self._handle_response(response, write=True).json()
        new_sha = (data.get("content") or {}).get("sha")
        if not new_sha:
            raise APIError(f"No SHA returned for {path}", response.status_code)
        logger.debug(f"Wrote {path} ({len(content)} bytes) -> {new_sha}")
        return str(new_sha)

    async def delete_file(self, path: str, sha: str | None, message: str) -> None:
        """Delete a file at a known version.

        Does nothing when sha is None (nothing known to delete).

        Raises:
            VersionConflictError: If the remote version no longer matches sha.
        """
        if not sha:
            logger.debug(f"Skipping delete of {path}: no known SHA")
            return
        body = {"message": message, "sha": sha, "branch": self.repo.branch}
        response = await self._request("DELETE", self._contents_url(path), json=body)
        if response.status_code == 404:
            logger.debug(f"Already deleted on remote: {path}")
            return
        self._handle_response(response, write=True)

    async def reset_branch(self, message: str = "Reset repository") -> None:
        """Replace the branch history with a single empty commit."""
        response = await self._request(
            "POST",
            f"{self._repo_url}/git/commits",
            json={"message": message, "tree": EMPTY_TREE_SHA, "parents": []},
        )
        commit_sha = self._handle_response(response, write=True).json()["sha"]

        branch = self.repo.branch
        response = await self._request(
            "PATCH",
            f"{self._repo_url}/git/refs/heads/{branch}",
            json={"sha": commit_sha, "force": True},
        )
        if response.status_code == 422:
            # Branch does not exist yet
            logger.info(f"Creating branch {branch} at {commit_sha}")
            response = await self._request(
                "POST",
                f"{self._repo_url}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": commit_sha},
            )
        self._handle_response(response, write=True)
        logger.info(f"Reset {self.repo.full_name}@{branch} to empty commit {commit_sha}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return f"HTTP {response.status_code}"
