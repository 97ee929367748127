import hashlib
import hmac

import httpx
import pytest

from release_orchestrator.adapters.github_adapter import GitHubSourceRepository, StubbedSourceRepository
from release_orchestrator.errors import SourceFetchError
from release_orchestrator.github import GitHubClient, parse_push_event, verify_signature


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_verify_signature():
    body = b'{"ref": "refs/heads/main"}'
    assert verify_signature("s3cret", body, sign("s3cret", body))
    assert not verify_signature("s3cret", body, sign("other", body))
    assert not verify_signature("s3cret", body, None)
    assert verify_signature(None, body, None)


def test_parse_push_event():
    event = parse_push_event({"ref": "refs/heads/main", "after": "abc1234def"})
    assert event is not None
    assert (event.branch, event.revision, event.deleted) == ("main", "abc1234def", False)

    assert parse_push_event({"ref": "refs/tags/v1.0.0", "after": "abc1234def"}) is None
    deleted = parse_push_event({"ref": "refs/heads/old", "after": "0" * 40, "deleted": True})
    assert deleted.deleted


def github_transport(handler):
    return httpx.AsyncClient(base_url="https://api.github.com", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_source_repository_resolves_branch_head():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"sha": "abc1234def", "commit": {"message": "Fix things"}})

    client = GitHubClient(repo="user/app", token="t0ken", client=github_transport(handler))
    repository = GitHubSourceRepository(client)

    revision = await repository.resolve(branch="main")

    assert revision.revision == "abc1234def"
    assert revision.message == "Fix things"
    assert seen == {"path": "/repos/user/app/commits/main", "auth": "Bearer t0ken"}
    await client.close()


@pytest.mark.asyncio
async def test_source_repository_maps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "No commit found"})

    client = GitHubClient(repo="user/app", client=github_transport(handler))

    with pytest.raises(SourceFetchError):
        await GitHubSourceRepository(client).resolve(branch="main", revision="deadbeef")
    await client.close()


@pytest.mark.asyncio
async def test_stubbed_source_repository():
    source = StubbedSourceRepository()
    with pytest.raises(SourceFetchError):
        await source.resolve(branch="main")

    source.push("main", "abc1234d", "Initial commit")
    head = await source.resolve(branch="main")
    assert (head.revision, head.message) == ("abc1234d", "Initial commit")
    pinned = await source.resolve(branch="main", revision="def5678a")
    assert pinned.revision == "def5678a"
    assert (await source.resolve(branch="main")).revision == "def5678a"
