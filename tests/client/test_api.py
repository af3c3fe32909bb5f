"""Tests for the GitHub contents API client."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from gitgallery.client.api import (
    EMPTY_TREE_SHA,
    APIError,
    AuthenticationError,
    GitHubStorage,
    RemoteEntry,
    TransientNetworkError,
    VersionConflictError,
)
from gitgallery.core.config import GitHubConfig, RepoInfo

CONTENTS = "https://api.github.com/repos/octo/photos/contents"


def make_storage(branch: str = "main") -> GitHubStorage:
    """Create a GitHubStorage for testing."""
    return GitHubStorage(GitHubConfig(token="token123"), RepoInfo("octo", "photos", branch))


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestRemoteEntry:
    """Tests for RemoteEntry dataclass."""

    def test_from_dict(self) -> None:
        """Should create RemoteEntry from a listing item."""
        entry = RemoteEntry.from_dict(
            {"name": "a.jpg", "path": "x/a.jpg", "type": "file", "sha": "abc", "size": 10}
        )
        assert entry.name == "a.jpg"
        assert entry.path == "x/a.jpg"
        assert entry.type == "file"
        assert entry.sha == "abc"
        assert entry.size == 10

    def test_from_dict_defaults(self) -> None:
        entry = RemoteEntry.from_dict({"name": "d", "path": "d", "type": "dir", "size": None})
        assert entry.sha == ""
        assert entry.size == 0


class TestReads:
    """Tests for read operations."""

    @pytest.mark.asyncio
    async def test_get_file(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should decode inline base64 content."""
        httpx_mock.add_response(
            url=f"{CONTENTS}/gitgallery/meta/manifest.json?ref=main",
            json={"sha": "s1", "size": 5, "encoding": "base64", "content": b64(b"hello")},
        )

        async with make_storage() as storage:
            file = await storage.get_file("gitgallery/meta/manifest.json")

        assert file is not None
        assert file.sha == "s1"
        assert file.content == b"hello"
        assert file.text() == "hello"

    @pytest.mark.asyncio
    async def test_get_file_wrapped_base64(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Line breaks inside the payload should be ignored."""
        encoded = b64(b"x" * 100)
        wrapped = "\n".join(encoded[i : i + 60] for i in range(0, len(encoded), 60))
        httpx_mock.add_response(
            url=f"{CONTENTS}/a.jpg?ref=main",
            json={"sha": "s", "size": 100, "encoding": "base64", "content": wrapped},
        )

        async with make_storage() as storage:
            file = await storage.get_file("a.jpg")

        assert file is not None
        assert file.content == b"x" * 100

    @pytest.mark.asyncio
    async def test_get_large_file_uses_blob(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Files returned without inline content are read through the blob API."""
        httpx_mock.add_response(
            url=f"{CONTENTS}/big.jpg?ref=main",
            json={"sha": "big", "size": 3, "encoding": "none", "content": ""},
        )
        httpx_mock.add_response(
            url="https://api.github.com/repos/octo/photos/git/blobs/big",
            json={"encoding": "base64", "content": b64(b"abc")},
        )

        async with make_storage() as storage:
            file = await storage.get_file("big.jpg")

        assert file is not None
        assert file.content == b"abc"

    @pytest.mark.asyncio
    async def test_get_missing_file(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A 404 should read as None, not raise."""
        httpx_mock.add_response(
            url=f"{CONTENTS}/missing.jpg?ref=main", status_code=404, json={"message": "Not Found"}
        )

        async with make_storage() as storage:
            assert await storage.get_file("missing.jpg") is None

    @pytest.mark.asyncio
    async def test_get_file_sha(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url=f"{CONTENTS}/a.jpg?ref=dev",
            json={"sha": "s2", "size": 1, "encoding": "base64", "content": b64(b"a")},
        )

        async with make_storage("dev") as storage:
            assert await storage.get_file_sha("a.jpg") == "s2"

    @pytest.mark.asyncio
    async def test_path_is_quoted(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Spaces in paths are percent-encoded, slashes kept."""
        httpx_mock.add_response(
            url=f"{CONTENTS}/gitgallery/images/My%20Album/a.jpg?ref=main", status_code=404
        )

        async with make_storage() as storage:
            assert await storage.get_file_sha("gitgallery/images/My Album/a.jpg") is None

    @pytest.mark.asyncio
    async def test_list_directory(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url=f"{CONTENTS}/gitgallery/meta?ref=main",
            json=[
                {"name": "2024", "path": "gitgallery/meta/2024", "type": "dir", "sha": "d"},
                {"name": "manifest.json", "path": "gitgallery/meta/manifest.json", "type": "file", "sha": "m", "size": 9},
            ],
        )

        async with make_storage() as storage:
            entries = await storage.list_directory("gitgallery/meta")

        assert entries is not None
        assert [e.type for e in entries] == ["dir", "file"]

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{CONTENTS}/nope?ref=main", status_code=404)

        async with make_storage() as storage:
            assert await storage.list_directory("nope") is None


class TestWrites:
    """Tests for conditional writes."""

    @pytest.mark.asyncio
    async def test_put_file_sends_sha(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Updates should carry the last observed SHA."""
        httpx_mock.add_response(
            method="PUT", url=f"{CONTENTS}/a.json", json={"content": {"sha": "new"}}
        )

        async with make_storage() as storage:
            sha = await storage.put_file("a.json", b"{}", "Update", sha="old")

        assert sha == "new"
        request = httpx_mock.get_request()
        body = json.loads(request.content)
        assert body == {"message": "Update", "content": b64(b"{}"), "branch": "main", "sha": "old"}
        assert request.headers["Authorization"] == "Bearer token123"

    @pytest.mark.asyncio
    async def test_put_file_create_omits_sha(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="PUT", url=f"{CONTENTS}/a.json", status_code=201, json={"content": {"sha": "s"}}
        )

        async with make_storage() as storage:
            await storage.put_file("a.json", b"{}", "Create")

        body = json.loads(httpx_mock.get_request().content)
        assert "sha" not in body

    @pytest.mark.asyncio
    async def test_put_file_conflict(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A 409 on write is a version conflict."""
        httpx_mock.add_response(
            method="PUT", url=f"{CONTENTS}/a.json", status_code=409, json={"message": "does not match"}
        )

        async with make_storage() as storage:
            with pytest.raises(VersionConflictError):
                await storage.put_file("a.json", b"{}", "Update", sha="stale")

    @pytest.mark.asyncio
    async def test_put_file_missing_sha_is_conflict(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A 422 on write (sha not supplied for an existing file) is a conflict too."""
        httpx_mock.add_response(
            method="PUT",
            url=f"{CONTENTS}/a.json",
            status_code=422,
            json={"message": '"sha" wasn\'t supplied.'},
        )

        async with make_storage() as storage:
            with pytest.raises(VersionConflictError):
                await storage.put_file("a.json", b"{}", "Create")

    @pytest.mark.asyncio
    async def test_delete_without_sha_is_noop(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Nothing is sent when no SHA is known."""
        async with make_storage() as storage:
            await storage.delete_file("a.jpg", None, "Delete")

        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_delete_file(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="DELETE", url=f"{CONTENTS}/a.jpg", json={"commit": {}})

        async with make_storage() as storage:
            await storage.delete_file("a.jpg", "s1", "Delete a.jpg")

        body = json.loads(httpx_mock.get_request().content)
        assert body == {"message": "Delete a.jpg", "sha": "s1", "branch": "main"}

    @pytest.mark.asyncio
    async def test_delete_already_gone(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="DELETE", url=f"{CONTENTS}/a.jpg", status_code=404)

        async with make_storage() as storage:
            await storage.delete_file("a.jpg", "s1", "Delete a.jpg")

    @pytest.mark.asyncio
    async def test_reset_branch(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should commit the empty tree and force the branch onto it."""
        httpx_mock.add_response(
            method="POST",
            url="https://api.github.com/repos/octo/photos/git/commits",
            json={"sha": "c1"},
        )
        httpx_mock.add_response(
            method="PATCH",
            url="https://api.github.com/repos/octo/photos/git/refs/heads/main",
            json={"ref": "refs/heads/main"},
        )

        async with make_storage() as storage:
            await storage.reset_branch("Reset")

        commit, ref = httpx_mock.get_requests()
        assert json.loads(commit.content) == {"message": "Reset", "tree": EMPTY_TREE_SHA, "parents": []}
        assert json.loads(ref.content) == {"sha": "c1", "force": True}

    @pytest.mark.asyncio
    async def test_reset_creates_missing_branch(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST",
            url="https://api.github.com/repos/octo/photos/git/commits",
            json={"sha": "c1"},
        )
        httpx_mock.add_response(
            method="PATCH",
            url="https://api.github.com/repos/octo/photos/git/refs/heads/main",
            status_code=422,
            json={"message": "Reference does not exist"},
        )
        httpx_mock.add_response(
            method="POST",
            url="https://api.github.com/repos/octo/photos/git/refs",
            status_code=201,
            json={"ref": "refs/heads/main"},
        )

        async with make_storage() as storage:
            await storage.reset_branch()

        created = httpx_mock.get_requests()[-1]
        assert json.loads(created.content) == {"ref": "refs/heads/main", "sha": "c1"}


class TestErrors:
    """Tests for status code mapping."""

    @pytest.mark.asyncio
    async def test_unauthorized(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{CONTENTS}/a.jpg?ref=main", status_code=401)

        async with make_storage() as storage:
            with pytest.raises(AuthenticationError):
                await storage.get_file("a.jpg")

    @pytest.mark.asyncio
    async def test_rate_limited_is_transient(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url=f"{CONTENTS}/a.jpg?ref=main",
            status_code=403,
            json={"message": "API rate limit exceeded"},
        )

        async with make_storage() as storage:
            with pytest.raises(TransientNetworkError):
                await storage.get_file("a.jpg")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{CONTENTS}/a.jpg?ref=main", status_code=502)

        async with make_storage() as storage:
            with pytest.raises(TransientNetworkError):
                await storage.get_file("a.jpg")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("boom"))

        async with make_storage() as storage:
            with pytest.raises(TransientNetworkError):
                await storage.get_file("a.jpg")

    @pytest.mark.asyncio
    async def test_read_422_is_not_conflict(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Only writes map 422 to a version conflict."""
        httpx_mock.add_response(url=f"{CONTENTS}/a.jpg?ref=main", status_code=422)

        async with make_storage() as storage:
            with pytest.raises(APIError) as exc_info:
                await storage.get_file("a.jpg")

        assert not isinstance(exc_info.value, VersionConflictError)
        assert exc_info.value.status_code == 422
