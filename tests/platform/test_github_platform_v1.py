import json

import httpx
import pytest

from freezegate.config.settings import Settings
from freezegate.freezer.errors import AdapterFailure, AdapterTimeout
from freezegate.platform.base import PullRequest
from freezegate.platform.github import GitHubPlatform, StaticTokenProvider

API = "https://api.github.test"


class FakeGitHub:
    def __init__(self):
        self.rulesets = []
        self.check_runs = []
        self.pulls = []
        self.requests = []
        self.status_override = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override:
            return httpx.Response(self.status_override, text="upstream error")
        path = request.url.path
        if path == "/repos/acme/web/rulesets" and request.method == "GET":
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params["per_page"])
            return httpx.Response(200, json=self.rulesets[(page - 1) * per_page : page * per_page])
        if path == "/repos/acme/web/rulesets" and request.method == "POST":
            body = json.loads(request.content)
            body["id"] = len(self.rulesets) + 1
            self.rulesets.append(body)
            return httpx.Response(201, json=body)
        if path.startswith("/repos/acme/web/rulesets/") and request.method == "DELETE":
            ruleset_id = int(path.rsplit("/", 1)[1])
            self.rulesets = [r for r in self.rulesets if r["id"] != ruleset_id]
            return httpx.Response(204)
        if path == "/repos/acme/web/pulls":
            page = int(request.url.params["page"])
            per_page = int(request.url.params["per_page"])
            return httpx.Response(200, json=self.pulls[(page - 1) * per_page : page * per_page])
        if path == "/repos/acme/web/check-runs":
            body = json.loads(request.content)
            self.check_runs.insert(0, body)
            return httpx.Response(201, json=body)
        if path.startswith("/repos/acme/web/commits/"):
            sha = path.split("/")[5]
            runs = [r for r in self.check_runs if r["head_sha"] == sha]
            return httpx.Response(200, json={"total_count": len(runs), "check_runs": runs})
        if path == "/installation/repositories":
            return httpx.Response(200, json={"repositories": [{"full_name": "acme/web"}, {"full_name": "acme/api"}]})
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def adapter(github):
    cfg = Settings(GITHUB_API_URL=API, CHECK_NAME="freezegate", RULESET_PREFIX="freezegate")
    return GitHubPlatform(
        StaticTokenProvider("tkn"),
        settings=cfg,
        client_factory=lambda: httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(github)),
    )


@pytest.mark.asyncio
async def test_protection_created_once_and_removed(adapter, github):
    await adapter.apply_protection(1, "acme/web", "main")
    await adapter.apply_protection(1, "acme/web", "main")
    assert [r["name"] for r in github.rulesets] == ["freezegate:main"]
    ruleset = github.rulesets[0]
    assert ruleset["conditions"]["ref_name"]["include"] == ["refs/heads/main"]
    assert ruleset["rules"] == [{"type": "update"}]
    assert github.requests[0].headers["Authorization"] == "Bearer tkn"

    await adapter.apply_protection(1, "acme/web")
    assert github.rulesets[1]["conditions"]["ref_name"]["include"] == ["~ALL"]

    await adapter.remove_protection(1, "acme/web", "main")
    assert [r["name"] for r in github.rulesets] == ["freezegate"]
    # removing an absent ruleset is a no-op
    await adapter.remove_protection(1, "acme/web", "main")
    await adapter.aclose()


@pytest.mark.asyncio
async def test_existing_ruleset_found_past_first_page(adapter, github):
    github.rulesets = [{"id": n, "name": f"team-rule-{n}"} for n in range(1, 121)]
    github.rulesets.insert(110, {"id": 500, "name": "freezegate:main"})

    await adapter.apply_protection(1, "acme/web", "main")
    assert not [r for r in github.requests if r.method == "POST"]

    await adapter.remove_protection(1, "acme/web", "main")
    assert "freezegate:main" not in [r["name"] for r in github.rulesets]
    assert len(github.rulesets) == 120
    await adapter.aclose()


@pytest.mark.asyncio
async def test_open_pull_requests_paginated(adapter, github):
    github.pulls = [
        {"number": n, "base": {"ref": "main" if n % 2 else "dev"}, "head": {"sha": f"s{n}"}} for n in range(1, 151)
    ]
    prs = await adapter.list_open_pull_requests(1, "acme/web")
    assert len(prs) == 150
    assert prs[0] == PullRequest(number=1, target_branch="main", head_sha="s1")
    assert prs[1].target_branch == "dev"
    assert len([r for r in github.requests if r.url.path == "/repos/acme/web/pulls"]) == 2


@pytest.mark.asyncio
async def test_merge_signal_roundtrip(adapter, github):
    pr = PullRequest(number=3, target_branch="main", head_sha="abc")
    assert await adapter.get_merge_signal(1, "acme/web", pr) is None
    await adapter.push_merge_signal(1, "acme/web", pr, True)
    assert github.check_runs[0]["conclusion"] == "failure"
    assert github.check_runs[0]["name"] == "freezegate"
    assert await adapter.get_merge_signal(1, "acme/web", pr) is True
    await adapter.push_merge_signal(1, "acme/web", pr, False)
    assert github.check_runs[0]["output"]["title"] == "Repository is not frozen"
    assert await adapter.get_merge_signal(1, "acme/web", pr) is False


@pytest.mark.asyncio
async def test_push_without_head_sha_not_retryable(adapter):
    with pytest.raises(AdapterFailure) as exc:
        await adapter.push_merge_signal(1, "acme/web", PullRequest(number=3, target_branch="main"), True)
    assert not exc.value.retryable


@pytest.mark.asyncio
async def test_http_errors_mapped(adapter, github):
    github.status_override = 502
    with pytest.raises(AdapterFailure) as exc:
        await adapter.list_open_pull_requests(1, "acme/web")
    assert exc.value.retryable
    assert "HTTP 502" in str(exc.value)

    github.status_override = 422
    with pytest.raises(AdapterFailure) as exc:
        await adapter.apply_protection(1, "acme/web")
    assert not exc.value.retryable


@pytest.mark.asyncio
async def test_timeout_mapped():
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = GitHubPlatform(
        StaticTokenProvider(""),
        settings=Settings(GITHUB_API_URL=API, ADAPTER_TIMEOUT_SEC=3.0),
        client_factory=lambda: httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(slow)),
    )
    with pytest.raises(AdapterTimeout) as exc:
        await adapter.list_installation_repositories(1)
    assert exc.value.timeout == 3.0


@pytest.mark.asyncio
async def test_installation_repositories(adapter):
    assert await adapter.list_installation_repositories(1) == ["acme/web", "acme/api"]


@pytest.mark.asyncio
async def test_invalid_repository_name(adapter):
    with pytest.raises(AdapterFailure):
        await adapter.apply_protection(1, "not-a-repo")
