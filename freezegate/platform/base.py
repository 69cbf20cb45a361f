from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from freezegate.freezer.models import FreezeRecord


@dataclass(frozen=True)
class PullRequest:
    number: int
    target_branch: str
    head_sha: str = ""


class PlatformAdapter(ABC):
    """Code-hosting side effects. Every method must be safe to repeat."""

    @abstractmethod
    async def apply_protection(self, installation_id: int, repository: str, branch: Optional[str] = None) -> None: ...

    @abstractmethod
    async def remove_protection(self, installation_id: int, repository: str, branch: Optional[str] = None) -> None: ...

    @abstractmethod
    async def list_open_pull_requests(self, installation_id: int, repository: str) -> List[PullRequest]: ...

    @abstractmethod
    async def get_merge_signal(self, installation_id: int, repository: str, pr: PullRequest) -> Optional[bool]:
        """Current signal: True=block, False=clear, None=never pushed."""

    @abstractmethod
    async def push_merge_signal(
        self,
        installation_id: int,
        repository: str,
        pr: PullRequest,
        block: bool,
        freeze: Optional[FreezeRecord] = None,
    ) -> None: ...

    @abstractmethod
    async def list_installation_repositories(self, installation_id: int) -> List[str]: ...

    async def aclose(self) -> None:
        pass


__all__ = ["PullRequest", "PlatformAdapter"]
