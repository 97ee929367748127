"""GitHub adapter implementing the source repository port."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx

from release_orchestrator.application.ports import SourceRepository
from release_orchestrator.errors import SourceFetchError
from release_orchestrator.github import GitHubClient
from release_orchestrator.models import SourceRevision


@dataclass(slots=True)
class GitHubSourceRepository(SourceRepository):
    client: GitHubClient

    async def resolve(self, *, branch: str, revision: Optional[str] = None) -> SourceRevision:
        try:
            commit = await self.client.get_commit(revision or branch)
        except httpx.HTTPError as exc:
            raise SourceFetchError(
                f"Unable to fetch {revision or branch} from {self.client.repo}: {exc}"
            ) from exc
        if not commit.sha:
            raise SourceFetchError(f"GitHub returned no revision for {revision or branch}")
        return SourceRevision(revision=commit.sha, branch=branch, message=commit.message)


@dataclass(slots=True)
class StubbedSourceRepository(SourceRepository):
    """In-memory branch heads for development and testing."""

    heads: dict[str, str] = field(default_factory=dict)
    messages: dict[str, str] = field(default_factory=dict)

    def push(self, branch: str, revision: str, message: Optional[str] = None) -> None:
        self.heads[branch] = revision
        if message:
            self.messages[revision] = message

    async def resolve(self, *, branch: str, revision: Optional[str] = None) -> SourceRevision:
        # Pushes reach the stub only as webhook revisions; the newest one is the head.
        if revision:
            self.heads[branch] = revision
        resolved = revision or self.heads.get(branch)
        if not resolved:
            raise SourceFetchError(f"Branch {branch} has no commits")
        return SourceRevision(
            revision=resolved, branch=branch, message=self.messages.get(resolved)
        )
