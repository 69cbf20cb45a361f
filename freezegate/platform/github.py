"""
GitHub REST implementation of the platform adapter.

- protection: repository rulesets named ``<prefix>`` (whole repository) or
  ``<prefix>:<branch>`` carrying an ``update`` rule
- merge signal: a completed check run named ``CHECK_NAME`` on the PR head
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from freezegate.config.settings import Settings, get_settings
from freezegate.freezer.errors import AdapterFailure, AdapterTimeout
from freezegate.freezer.messages import check_run_output
from freezegate.freezer.models import FreezeRecord

from .base import PlatformAdapter, PullRequest

log = logging.getLogger(__name__)

TokenProvider = Callable[[int], Awaitable[str]]

PER_PAGE = 100


class StaticTokenProvider:
    """Single token for every installation; minting installation tokens happens elsewhere."""

    def __init__(self, token: str):
        self._token = token

    async def __call__(self, installation_id: int) -> str:
        return self._token


def _split(repository: str) -> tuple:
    owner, _, name = repository.partition("/")
    if not owner or not name or "/" in name:
        raise AdapterFailure("repository", f"invalid repository '{repository}'", retryable=False)
    return owner, name


class GitHubPlatform(PlatformAdapter):
    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        cfg = settings or get_settings()
        self.check_name = cfg.CHECK_NAME
        self.ruleset_prefix = cfg.RULESET_PREFIX
        self._timeout = cfg.ADAPTER_TIMEOUT_SEC
        self._token_provider = token_provider
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(
                base_url=cfg.GITHUB_API_URL,
                timeout=cfg.ADAPTER_TIMEOUT_SEC,
                headers={"Accept": "application/vnd.github+json", "User-Agent": "freezegate/1"},
            )
        )
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GitHubPlatform":
        cfg = settings or get_settings()
        return cls(StaticTokenProvider(cfg.GITHUB_TOKEN), settings=cfg)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        installation_id: int,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        token = await self._token_provider(installation_id)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = await self._http().request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise AdapterTimeout(operation, self._timeout) from exc
        except httpx.HTTPError as exc:
            raise AdapterFailure(operation, str(exc)) from exc
        if allow_404 and resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code in (403, 429)
            log.warning(
                "github_request_failed",
                extra={"operation": operation, "status": resp.status_code, "path": path},
            )
            raise AdapterFailure(operation, f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=retryable)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ===== protection =====

    def ruleset_name(self, branch: Optional[str]) -> str:
        return f"{self.ruleset_prefix}:{branch}" if branch else self.ruleset_prefix

    async def _find_ruleset(self, installation_id: int, repository: str, name: str) -> Optional[Dict[str, Any]]:
        owner, repo = _split(repository)
        page = 1
        while True:
            rulesets = await self._request(
                installation_id,
                "GET",
                f"/repos/{owner}/{repo}/rulesets",
                operation="list_rulesets",
                params={"per_page": PER_PAGE, "page": page},
            ) or []
            for ruleset in rulesets:
                if ruleset.get("name") == name:
                    return ruleset
            if len(rulesets) < PER_PAGE:
                return None
            page += 1

    async def apply_protection(self, installation_id: int, repository: str, branch: Optional[str] = None) -> None:
        name = self.ruleset_name(branch)
        if await self._find_ruleset(installation_id, repository, name):
            log.debug("ruleset_present", extra={"repository": repository, "ruleset": name})
            return
        owner, repo = _split(repository)
        include = [f"refs/heads/{branch}"] if branch else ["~ALL"]
        await self._request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/rulesets",
            operation="apply_protection",
            json={
                "name": name,
                "target": "branch",
                "enforcement": "active",
                "conditions": {"ref_name": {"include": include, "exclude": []}},
                "rules": [{"type": "update"}],
            },
        )
        log.info("ruleset_created", extra={"repository": repository, "ruleset": name})

    async def remove_protection(self, installation_id: int, repository: str, branch: Optional[str] = None) -> None:
        name = self.ruleset_name(branch)
        ruleset = await self._find_ruleset(installation_id, repository, name)
        if ruleset is None:
            return
        owner, repo = _split(repository)
        await self._request(
            installation_id,
            "DELETE",
            f"/repos/{owner}/{repo}/rulesets/{ruleset['id']}",
            operation="remove_protection",
            allow_404=True,
        )
        log.info("ruleset_deleted", extra={"repository": repository, "ruleset": name})

    # ===== pull requests =====

    async def list_open_pull_requests(self, installation_id: int, repository: str) -> List[PullRequest]:
        owner, repo = _split(repository)
        prs: List[PullRequest] = []
        page = 1
        while True:
            items = await self._request(
                installation_id,
                "GET",
                f"/repos/{owner}/{repo}/pulls",
                operation="list_open_pull_requests",
                params={"state": "open", "per_page": PER_PAGE, "page": page},
            ) or []
            for item in items:
                prs.append(
                    PullRequest(
                        number=int(item["number"]),
                        target_branch=(item.get("base") or {}).get("ref", ""),
                        head_sha=(item.get("head") or {}).get("sha", ""),
                    )
                )
            if len(items) < PER_PAGE:
                return prs
            page += 1

    async def get_merge_signal(self, installation_id: int, repository: str, pr: PullRequest) -> Optional[bool]:
        if not pr.head_sha:
            return None
        owner, repo = _split(repository)
        data = await self._request(
            installation_id,
            "GET",
            f"/repos/{owner}/{repo}/commits/{pr.head_sha}/check-runs",
            operation="get_merge_signal",
            params={"check_name": self.check_name, "filter": "latest"},
            allow_404=True,
        )
        runs = (data or {}).get("check_runs") or []
        if not runs:
            return None
        conclusion = runs[0].get("conclusion")
        if conclusion == "failure":
            return True
        if conclusion == "success":
            return False
        return None

    async def push_merge_signal(
        self,
        installation_id: int,
        repository: str,
        pr: PullRequest,
        block: bool,
        freeze: Optional[FreezeRecord] = None,
    ) -> None:
        if not pr.head_sha:
            raise AdapterFailure("push_merge_signal", f"PR #{pr.number} has no head sha", retryable=False)
        owner, repo = _split(repository)
        await self._request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/check-runs",
            operation="push_merge_signal",
            json={
                "name": self.check_name,
                "head_sha": pr.head_sha,
                "status": "completed",
                "conclusion": "failure" if block else "success",
                "output": check_run_output(freeze if block else None),
            },
        )

    async def list_installation_repositories(self, installation_id: int) -> List[str]:
        names: List[str] = []
        page = 1
        while True:
            data = await self._request(
                installation_id,
                "GET",
                "/installation/repositories",
                operation="list_installation_repositories",
                params={"per_page": PER_PAGE, "page": page},
            ) or {}
            items = data.get("repositories") or []
            names.extend(item["full_name"] for item in items)
            if len(items) < PER_PAGE:
                return names
            page += 1


__all__ = ["GitHubPlatform", "StaticTokenProvider", "TokenProvider"]
