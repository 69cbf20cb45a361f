import os
import sys
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from freezegate.config.settings import Settings  # noqa: E402
from freezegate.freezer.errors import AdapterFailure  # noqa: E402
from freezegate.freezer.manager import FreezeManager  # noqa: E402
from freezegate.freezer.reconcile import PrReconciler  # noqa: E402
from freezegate.platform.base import PlatformAdapter, PullRequest  # noqa: E402
from freezegate.storage.memory import InMemoryFreezeStore  # noqa: E402

T0 = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)


class FakePlatform(PlatformAdapter):
    """In-memory code host recording every side effect."""

    def __init__(self):
        self.prs: Dict[str, List[PullRequest]] = {}
        self.repositories: List[str] = []
        self.protected: Set[Tuple[str, Optional[str]]] = set()
        self.signals: Dict[Tuple[str, int], bool] = {}
        self.pushes: List[Tuple[str, int, bool]] = []
        self.calls: List[Tuple] = []
        self.fail_push: Dict[int, int] = {}
        self.fail_list: Set[str] = set()
        self.fail_protection: Set[str] = set()

    def add_pr(self, repository: str, number: int, target_branch: str) -> PullRequest:
        pr = PullRequest(number=number, target_branch=target_branch, head_sha=f"sha{number}")
        self.prs.setdefault(repository, []).append(pr)
        return pr

    def signal(self, repository: str, number: int) -> Optional[bool]:
        return self.signals.get((repository, number))

    async def apply_protection(self, installation_id, repository, branch=None):
        self.calls.append(("apply", repository, branch))
        if repository in self.fail_protection:
            raise AdapterFailure("apply_protection", "HTTP 502")
        self.protected.add((repository, branch))

    async def remove_protection(self, installation_id, repository, branch=None):
        self.calls.append(("remove", repository, branch))
        if repository in self.fail_protection:
            raise AdapterFailure("remove_protection", "HTTP 502")
        self.protected.discard((repository, branch))

    async def list_open_pull_requests(self, installation_id, repository):
        if repository in self.fail_list:
            raise AdapterFailure("list_open_pull_requests", "HTTP 500")
        return list(self.prs.get(repository, []))

    async def get_merge_signal(self, installation_id, repository, pr):
        return self.signals.get((repository, pr.number))

    async def push_merge_signal(self, installation_id, repository, pr, block, freeze=None):
        self.calls.append(("push", repository, pr.number, block))
        # fail_push maps PR number -> remaining failures (-1 = always)
        remaining = self.fail_push.get(pr.number, 0)
        if remaining:
            if remaining > 0:
                self.fail_push[pr.number] = remaining - 1
            raise AdapterFailure("push_merge_signal", "HTTP 502")
        self.signals[(repository, pr.number)] = block
        self.pushes.append((repository, pr.number, block))

    async def list_installation_repositories(self, installation_id):
        return list(self.repositories)


async def _no_sleep(_delay):
    return None


@pytest.fixture
def test_settings():
    return Settings(
        STORE_BACKEND="memory",
        FREEZE_DEFAULT_DURATION="2h",
        RECONCILE_RETRY_BASE_MS=1,
        RECONCILE_MAX_RETRIES=2,
        ADAPTER_TIMEOUT_SEC=5.0,
    )


@pytest.fixture
def store():
    return InMemoryFreezeStore()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def reconciler(store, platform, test_settings):
    return PrReconciler(store, platform, settings=test_settings, clock=lambda: T0, sleep=_no_sleep)


@pytest.fixture
def manager(store, platform, reconciler, test_settings):
    return FreezeManager(store, platform, reconciler, settings=test_settings, clock=lambda: T0)


@pytest.fixture
def t0():
    return T0
