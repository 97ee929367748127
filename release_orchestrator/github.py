"""GitHub client resolving revisions of the tracked repository."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GitHubCommit:
    """A commit as reported by the GitHub REST API."""

    sha: str
    message: Optional[str] = None


@dataclass(slots=True)
class PushEvent:
    """The parts of a GitHub push webhook the staging trigger needs."""

    branch: str
    revision: str
    deleted: bool = False


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """Check ``X-Hub-Signature-256`` against the shared webhook secret."""
    if not secret:
        return True
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def parse_push_event(payload: dict[str, Any]) -> Optional[PushEvent]:
    """Extract branch and head revision from a push payload (tags are ignored)."""
    ref = payload.get("ref") or ""
    prefix = "refs/heads/"
    if not ref.startswith(prefix):
        return None
    revision = payload.get("after") or (payload.get("head_commit") or {}).get("id") or ""
    return PushEvent(
        branch=ref[len(prefix):],
        revision=revision,
        deleted=bool(payload.get("deleted")) or set(revision) == {"0"},
    )


class GitHubClient:
    """Tiny wrapper around the GitHub REST API."""

    def __init__(
        self,
        *,
        repo: str,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.repo = repo
        self.token = token
        self._client = client or httpx.AsyncClient(base_url="https://api.github.com")

    @property
    def clone_url(self) -> str:
        return f"https://github.com/{self.repo}.git"

    async def close(self) -> None:
        await self._client.aclose()

    async def get_commit(self, ref: str) -> GitHubCommit:
        """Resolve a branch name or revision to a full commit."""
        url = f"/repos/{self.repo}/commits/{ref}"
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        logger.debug("Resolving commit from GitHub: %s", url)
        response = await self._client.get(url, headers=headers, timeout=30)
        response.raise_for_status()
        payload = response.json()
        commit = payload.get("commit") or {}
        return GitHubCommit(sha=payload.get("sha", ""), message=commit.get("message"))
