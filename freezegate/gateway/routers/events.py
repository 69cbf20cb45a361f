from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from freezegate.freezer.engine import FreezeEngine, build_engine
from freezegate.freezer.results import CommandResult, Outcome
from freezegate.freezer.service import CommandContext
from freezegate.platform.base import PullRequest

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/freeze", tags=["freeze"])

REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"
PR_ACTIONS = {"opened", "reopened", "synchronize", "edited", "ready_for_review"}


@lru_cache(maxsize=1)
def get_engine() -> FreezeEngine:
    return build_engine()


# ===== payloads (subset of the GitHub webhook bodies) =====


class Installation(BaseModel):
    id: int


class Repository(BaseModel):
    full_name: str = Field(pattern=REPO_PATTERN)


class User(BaseModel):
    login: str = Field(min_length=1)


class Comment(BaseModel):
    body: str = ""
    user: User


class Issue(BaseModel):
    number: int
    pull_request: Optional[Dict[str, Any]] = None


class CommentEvent(BaseModel):
    action: str = "created"
    installation: Installation
    repository: Repository
    comment: Comment
    issue: Optional[Issue] = None


class Ref(BaseModel):
    ref: str = ""
    sha: str = ""


class PullRequestPayload(BaseModel):
    number: int
    base: Ref
    head: Ref = Field(default_factory=Ref)


class PullRequestEvent(BaseModel):
    action: str
    installation: Installation
    repository: Repository
    pull_request: PullRequestPayload


# ===== routes =====


@router.post("/events/comment")
async def comment_event(body: CommentEvent, engine: FreezeEngine = Depends(get_engine)):
    if body.action != "created":
        return CommandResult(ok=True, outcome=Outcome.IGNORED, message="").to_dict()
    pr_number = None
    if body.issue is not None and body.issue.pull_request is not None:
        pr_number = body.issue.number
    context = CommandContext(
        installation_id=body.installation.id,
        repository=body.repository.full_name,
        actor=body.comment.user.login,
        pr_number=pr_number,
    )
    result = await engine.service.handle(body.comment.body, context)
    return result.to_dict()


@router.post("/events/pull-request")
async def pull_request_event(body: PullRequestEvent, engine: FreezeEngine = Depends(get_engine)):
    if body.action not in PR_ACTIONS:
        return {"ok": True, "ignored": True}
    pr = PullRequest(
        number=body.pull_request.number,
        target_branch=body.pull_request.base.ref,
        head_sha=body.pull_request.head.sha,
    )
    outcome = await engine.reconciler.reconcile_pull_request(
        body.installation.id, body.repository.full_name, pr
    )
    return {
        "ok": outcome.ok,
        "ignored": False,
        "number": outcome.number,
        "signal": outcome.desired.value,
        "pushed": outcome.pushed,
        "unchanged": outcome.unchanged,
        "unlocked": outcome.unlocked,
        "error": outcome.error,
    }


@router.post("/reconcile/{owner}/{repo}")
async def reconcile_repository(
    owner: str,
    repo: str,
    installation_id: int = Query(..., ge=1),
    engine: FreezeEngine = Depends(get_engine),
):
    report = await engine.reconciler.reconcile(installation_id, f"{owner}/{repo}")
    return report.to_dict()


@router.post("/tick")
async def tick(engine: FreezeEngine = Depends(get_engine)):
    report = await engine.manager.tick()
    return report.to_dict()
