"""Source control adapter (GitHub git data API).

Push writes every project file as a blob, builds one tree on top of the
branch head and fast-forwards the branch to a new commit. Pull replaces the
project's files with the branch's current tree.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import base64
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from ..codegen.planner import infer_language
from ..codegen.schemas import GeneratedFile
from ..crypto import decrypt_secret
from ..errors import LaunchpadError, SourcePushError
from ..models import SourceRepoLink
from ..resilience import CircuitBreaker, RetryPolicy
from ..store import ProjectStore
from .base import HTTPAdapter

logger = structlog.get_logger(__name__)

MAX_PULL_FILE_BYTES = 500_000
MAX_PULL_FILES = 100
DEFAULT_BRANCH = "main"


@dataclass
class PushResult:
    commit_sha: str
    commit_url: str


@dataclass
class PullResult:
    file_count: int
    commit_sha: str


class SourceControl(ABC):
    @abstractmethod
    async def push(self, user_id: str, project_id: str, commit_message: str) -> PushResult: ...

    @abstractmethod
    async def pull(self, project_id: str) -> PullResult: ...


class GitHubSourceControl(HTTPAdapter, SourceControl):
    """Pushes and pulls project files for projects linked to a GitHub repo."""

    def __init__(
        self,
        store: ProjectStore,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        decrypt: Callable[[str], str] = decrypt_secret,
    ):
        super().__init__(
            api_url,
            headers={"Accept": "application/vnd.github+json"},
            timeout=timeout,
            breaker=breaker,
            retry=retry,
            transport=transport,
        )
        self.store = store
        self._decrypt = decrypt

    async def _request_once(
        self, method: str, path: str, token: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(method, path, json=json, headers={"Authorization": f"Bearer {token}"})
        resp.raise_for_status()
        return resp.json()

    async def _api(self, method: str, path: str, token: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._call("github-api", self._request_once, method, path, token, json=json)

    async def _link(self, project_id: str) -> tuple[SourceRepoLink, str]:
        link = await self.store.get_source_link(project_id)
        if link is None:
            raise LaunchpadError(f"No source repository linked to project {project_id}")
        return link, self._decrypt(link.access_token)

    async def push(self, user_id: str, project_id: str, commit_message: str = "Update from Launchpad") -> PushResult:
        link, token = await self._link(project_id)
        repo = f"/repos/{link.repo_full_name}"
        branch = link.default_branch or DEFAULT_BRANCH

        files = await self.store.list_files(project_id)
        if not files:
            raise SourcePushError("No project files to push")

        logger.info("source_push_started", project_id=project_id, repo=link.repo_full_name, file_count=len(files))
        try:
            ref = await self._api("GET", f"{repo}/git/ref/heads/{branch}", token)
            head_sha = ref["object"]["sha"]
            head = await self._api("GET", f"{repo}/git/commits/{head_sha}", token)

            tree_items = []
            for file in files:
                blob = await self._api(
                    "POST",
                    f"{repo}/git/blobs",
                    token,
                    json={
                        "content": base64.b64encode(file.content.encode("utf-8")).decode("ascii"),
                        "encoding": "base64",
                    },
                )
                tree_items.append({"path": file.path, "mode": "100644", "type": "blob", "sha": blob["sha"]})

            tree = await self._api(
                "POST", f"{repo}/git/trees", token, json={"base_tree": head["tree"]["sha"], "tree": tree_items}
            )
            commit = await self._api(
                "POST",
                f"{repo}/git/commits",
                token,
                json={"message": commit_message, "tree": tree["sha"], "parents": [head_sha]},
            )
            await self._api("PATCH", f"{repo}/git/refs/heads/{branch}", token, json={"sha": commit["sha"]})
        except httpx.HTTPStatusError as e:
            await self.store.update_source_link(project_id, sync_status="error")
            raise SourcePushError(
                f"Push to {link.repo_full_name} rejected: HTTP {e.response.status_code}"
            ) from e

        await self.store.update_source_link(
            project_id,
            last_commit_sha=commit["sha"],
            last_synced_at=datetime.now(UTC),
            sync_status="synced",
        )
        logger.info("source_push_completed", project_id=project_id, user_id=user_id, commit_sha=commit["sha"])
        return PushResult(
            commit_sha=commit["sha"],
            commit_url=f"https://github.com/{link.repo_full_name}/commit/{commit['sha']}",
        )

    async def pull(self, project_id: str) -> PullResult:
        link, token = await self._link(project_id)
        repo = f"/repos/{link.repo_full_name}"
        branch = link.default_branch or DEFAULT_BRANCH

        tree = await self._api("GET", f"{repo}/git/trees/{branch}?recursive=1", token)
        blobs = [
            item
            for item in tree.get("tree", [])
            if item.get("type") == "blob" and item.get("size", 0) < MAX_PULL_FILE_BYTES
        ]
        head = await self._api("GET", f"{repo}/commits/{branch}", token)

        files = []
        for item in blobs[:MAX_PULL_FILES]:
            try:
                blob = await self._api("GET", f"{repo}/git/blobs/{item['sha']}", token)
            except httpx.HTTPError as e:
                logger.warning("source_pull_file_failed", project_id=project_id, path=item["path"], error=str(e))
                continue
            if blob.get("encoding") != "base64":
                continue
            try:
                content = base64.b64decode(blob["content"]).decode("utf-8")
            except UnicodeDecodeError:
                continue
            if "\0" in content:
                continue
            files.append(GeneratedFile(path=item["path"], content=content, language=infer_language(item["path"])))

        count = await self.store.replace_files(project_id, files)
        await self.store.update_source_link(
            project_id,
            last_commit_sha=head["sha"],
            last_synced_at=datetime.now(UTC),
            sync_status="synced",
        )
        logger.info("source_pull_completed", project_id=project_id, file_count=count, commit_sha=head["sha"])
        return PullResult(file_count=count, commit_sha=head["sha"])
