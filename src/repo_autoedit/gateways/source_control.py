"""Source-control gateway backed by the GitHub REST API."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from repo_autoedit.gateways.exceptions import (
    BranchError,
    CommitConflict,
    CommitError,
    FetchError,
    PullRequestError,
    SourceControlError,
)
from repo_autoedit.models import (
    Branch,
    CommitResult,
    FileSnapshot,
    PullRequest,
    RepoDescriptor,
    TreeNode,
    TreeNodeType,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PER_PAGE = 100
MAX_PAGES = 50
MAX_FILE_SIZE = 1_000_000  # Contents API only inlines files up to 1 MB
DEFAULT_TIMEOUT_SECONDS = 60
MAX_ERROR_TEXT = 500


@runtime_checkable
class SourceControlGateway(Protocol):
    """Operations the orchestrator consumes from a hosted source-control API."""

    async def list_repositories(self) -> list[RepoDescriptor]: ...

    async def get_repository(self, owner: str, repo: str) -> RepoDescriptor: ...

    async def list_tree(self, owner: str, repo: str, branch: str) -> list[TreeNode]: ...

    async def get_file_content(
        self, owner: str, repo: str, path: str, branch: str
    ) -> FileSnapshot: ...

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
        revision_marker: str | None = None,
    ) -> CommitResult: ...

    async def list_branches(self, owner: str, repo: str) -> list[Branch]: ...

    async def create_branch(
        self, owner: str, repo: str, new_name: str, from_commit_sha: str
    ) -> Branch: ...

    async def create_pull_request(
        self, owner: str, repo: str, title: str, body: str, head: str, base: str
    ) -> PullRequest: ...


def build_tree(items: list[dict[str, Any]]) -> list[TreeNode]:
    """Convert a flat recursive git tree listing into nested nodes.

    Only ``blob`` and ``tree`` entries are kept. Directories are listed
    before files at every level, each group sorted by name.

    Args:
        items: Entries with at least ``path`` and ``type`` keys.

    Returns:
        Top-level nodes of the repository.
    """
    roots: list[TreeNode] = []
    dirs: dict[str, TreeNode] = {}

    def ensure_dir(path: str) -> list[TreeNode]:
        if not path:
            return roots
        existing = dirs.get(path)
        if existing is not None:
            return existing.children
        parent_path, _, name = path.rpartition("/")
        node = TreeNode(path=path, name=name, type=TreeNodeType.DIR)
        dirs[path] = node
        ensure_dir(parent_path).append(node)
        return node.children

    for item in sorted(items, key=lambda entry: entry["path"]):
        item_type = item.get("type")
        path = item["path"]
        if item_type == "tree":
            ensure_dir(path)
        elif item_type == "blob":
            parent_path, _, name = path.rpartition("/")
            ensure_dir(parent_path).append(
                TreeNode(
                    path=path,
                    name=name,
                    type=TreeNodeType.FILE,
                    size=item.get("size"),
                )
            )

    def sort_level(nodes: list[TreeNode]) -> None:
        nodes.sort(key=lambda node: (node.type != TreeNodeType.DIR, node.name.lower()))
        for node in nodes:
            if node.children:
                sort_level(node.children)

    sort_level(roots)
    return roots


def _repo_from_payload(data: dict[str, Any]) -> RepoDescriptor:
    return RepoDescriptor(
        id=data["id"],
        name=data["name"],
        full_name=data["full_name"],
        owner=data["owner"]["login"],
        default_branch=data.get("default_branch") or "main",
    )


def _error_message(status: int, data: Any, text: str) -> str:
    if isinstance(data, dict) and data.get("message"):
        return f"{status}: {data['message']}"
    return f"{status}: {text[:MAX_ERROR_TEXT]}"


def _is_conflict(status: int, data: Any) -> bool:
    if status == 409:
        return True
    if status == 422 and isinstance(data, dict):
        return "sha" in str(data.get("message", "")).lower()
    return False


class GitHubGateway:
    """Async GitHub REST client implementing SourceControlGateway.

    Use as an async context manager, or call ``close()`` when done. An
    externally supplied ``aiohttp.ClientSession`` is never closed here.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the gateway.

        Args:
            token: GitHub token. Falls back to the GITHUB_TOKEN env var.
            base_url: API root. Falls back to GITHUB_API_URL, then api.github.com.
            session: Optional shared aiohttp session.
            timeout_seconds: Total timeout per request.

        Raises:
            SourceControlError: If no token is found.
        """
        self.token: str | None = token or os.getenv("GITHUB_TOKEN")
        if not self.token:
            raise SourceControlError(
                "No GitHub token found. Provide via parameter or GITHUB_TOKEN env var."
            )
        self.base_url: str = (
            base_url or os.getenv("GITHUB_API_URL") or DEFAULT_API_URL
        ).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GitHubGateway":
        self._get_session()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(
        self,
        method: str,
        path: str,
        error_cls: type[SourceControlError],
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, Any, str]:
        """Send one request and return ``(status, parsed_json_or_None, text)``.

        Transport failures are raised as ``error_cls``. HTTP error statuses
        are returned for the caller to map.
        """
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            async with self._get_session().request(
                method, url, headers=self._headers(), params=params, json=payload
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise error_cls(f"{method} {path} failed: {exc}") from exc

        data: Any = None
        if text.strip():
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                data = None
        return status, data, text

    async def _get_paginated(
        self,
        path: str,
        error_cls: type[SourceControlError],
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            page_params = {**(params or {}), "per_page": PER_PAGE, "page": page}
            status, data, text = await self._request(
                "GET", path, error_cls, params=page_params
            )
            if status != 200 or not isinstance(data, list):
                raise error_cls(f"GET {path} failed ({_error_message(status, data, text)})")
            items.extend(data)
            if len(data) < PER_PAGE:
                break
        return items

    async def list_repositories(self) -> list[RepoDescriptor]:
        items = await self._get_paginated(
            "/user/repos", FetchError, params={"sort": "updated"}
        )
        return [_repo_from_payload(item) for item in items]

    async def get_repository(self, owner: str, repo: str) -> RepoDescriptor:
        status, data, text = await self._request("GET", f"/repos/{owner}/{repo}", FetchError)
        if status != 200 or not isinstance(data, dict):
            raise FetchError(
                f"Repository '{owner}/{repo}' unavailable ({_error_message(status, data, text)})"
            )
        return _repo_from_payload(data)

    async def list_tree(self, owner: str, repo: str, branch: str) -> list[TreeNode]:
        status, data, text = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            FetchError,
            params={"recursive": "1"},
        )
        if status != 200 or not isinstance(data, dict):
            raise FetchError(
                f"Tree for '{owner}/{repo}@{branch}' unavailable "
                f"({_error_message(status, data, text)})"
            )
        if data.get("truncated"):
            logger.warning("Tree for %s/%s@%s was truncated by the API", owner, repo, branch)
        return build_tree(data.get("tree", []))

    async def get_file_content(
        self, owner: str, repo: str, path: str, branch: str
    ) -> FileSnapshot:
        status, data, text = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            FetchError,
            params={"ref": branch},
        )
        if status != 200:
            raise FetchError(
                f"Failed to fetch '{path}' from {owner}/{repo}@{branch} "
                f"({_error_message(status, data, text)})"
            )
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise FetchError(f"'{path}' in {owner}/{repo} is not a file")
        if data.get("size", 0) > MAX_FILE_SIZE:
            raise FetchError(f"'{path}' exceeds {MAX_FILE_SIZE} bytes")

        try:
            raw = base64.b64decode(data.get("content", ""))
            content = raw.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise FetchError(f"'{path}' is not a UTF-8 text file: {exc}") from exc

        return FileSnapshot(path=data.get("path", path), content=content, revision_marker=data["sha"])

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
        revision_marker: str | None = None,
    ) -> CommitResult:
        """Create a file, or update it when ``revision_marker`` is given.

        Raises:
            CommitConflict: If the marker is stale, or the file already exists
                when creating.
            CommitError: For any other write failure.
        """
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if revision_marker is not None:
            payload["sha"] = revision_marker

        status, data, text = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            CommitError,
            payload=payload,
        )
        if status in (200, 201) and isinstance(data, dict):
            return CommitResult(
                path=path,
                revision_marker=data["content"]["sha"],
                commit_sha=(data.get("commit") or {}).get("sha"),
            )
        if _is_conflict(status, data):
            raise CommitConflict(
                f"Revision conflict writing '{path}' on {branch} "
                f"({_error_message(status, data, text)})"
            )
        raise CommitError(
            f"Failed to write '{path}' on {branch} ({_error_message(status, data, text)})"
        )

    async def list_branches(self, owner: str, repo: str) -> list[Branch]:
        items = await self._get_paginated(f"/repos/{owner}/{repo}/branches", BranchError)
        return [
            Branch(
                name=item["name"],
                commit_sha=item["commit"]["sha"],
                protected=bool(item.get("protected", False)),
            )
            for item in items
        ]

    async def create_branch(
        self, owner: str, repo: str, new_name: str, from_commit_sha: str
    ) -> Branch:
        status, data, text = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            BranchError,
            payload={"ref": f"refs/heads/{new_name}", "sha": from_commit_sha},
        )
        if status != 201:
            raise BranchError(
                f"Failed to create branch '{new_name}' ({_error_message(status, data, text)})"
            )
        return Branch(name=new_name, commit_sha=from_commit_sha)

    async def create_pull_request(
        self, owner: str, repo: str, title: str, body: str, head: str, base: str
    ) -> PullRequest:
        status, data, text = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            PullRequestError,
            payload={"title": title, "body": body, "head": head, "base": base},
        )
        if status != 201 or not isinstance(data, dict):
            raise PullRequestError(
                f"Failed to open pull request {head} -> {base} "
                f"({_error_message(status, data, text)})"
            )
        return PullRequest(
            number=data["number"],
            url=data.get("html_url", ""),
            title=data.get("title", title),
            state=data.get("state", "open"),
        )
