from __future__ import annotations

import asyncio
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from freezegate.freezer.models import FreezeRecord, FreezeStatus, UnlockedPr

from .base import FreezeStore, raise_on_conflict

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS freeze_records(
    id TEXT PRIMARY KEY,
    repository TEXT NOT NULL,
    installation_id INTEGER NOT NULL,
    branch TEXT,
    started_at TEXT NOT NULL,
    expires_at TEXT,
    ended_at TEXT,
    reason TEXT,
    initiated_by TEXT NOT NULL,
    ended_by TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_freeze_records_repo ON freeze_records(repository, status);
CREATE INDEX IF NOT EXISTS idx_freeze_records_branch ON freeze_records(repository, branch, status);
CREATE TABLE IF NOT EXISTS unlocked_prs(
    id TEXT PRIMARY KEY,
    repository TEXT NOT NULL,
    installation_id INTEGER NOT NULL,
    pr_number INTEGER NOT NULL,
    unlocked_by TEXT NOT NULL,
    unlocked_at TEXT NOT NULL,
    reason TEXT,
    UNIQUE(installation_id, repository, pr_number)
);
"""

_COLUMNS = (
    "id, repository, installation_id, branch, started_at, expires_at, ended_at, "
    "reason, initiated_by, ended_by, status, created_at"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_to_record(row: sqlite3.Row) -> FreezeRecord:
    return FreezeRecord(
        id=row["id"],
        repository=row["repository"],
        installation_id=row["installation_id"],
        branch=row["branch"],
        started_at=_dt(row["started_at"]),
        expires_at=_dt(row["expires_at"]),
        ended_at=_dt(row["ended_at"]),
        reason=row["reason"],
        initiated_by=row["initiated_by"],
        ended_by=row["ended_by"],
        status=FreezeStatus(row["status"]),
        created_at=_dt(row["created_at"]),
    )


class SQLiteFreezeStore(FreezeStore):
    """
    File-backed store. ``BEGIN IMMEDIATE`` serialises the conflict check with the
    insert across processes; status transitions are conditional updates.
    """

    def __init__(self, path: str = "var/freezegate/freeze.sqlite") -> None:
        if path != ":memory:":
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self._conn = sqlite3.connect(path, timeout=30, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._mutex = threading.Lock()

    async def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        def _locked() -> T:
            with self._mutex:
                return func(self._conn)

        return await asyncio.to_thread(_locked)

    async def create_freeze(self, record: FreezeRecord, *, now: datetime) -> str:
        def _tx(conn: sqlite3.Connection) -> str:
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM freeze_records "
                    "WHERE repository=? AND installation_id=? AND branch IS ? AND status IN ('active','scheduled')",
                    (record.repository, record.installation_id, record.branch),
                ).fetchall()
                raise_on_conflict([_row_to_record(r) for r in rows], record, now)
                conn.execute(
                    f"INSERT INTO freeze_records({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        record.id,
                        record.repository,
                        record.installation_id,
                        record.branch,
                        _ts(record.started_at),
                        _ts(record.expires_at),
                        _ts(record.ended_at),
                        record.reason,
                        record.initiated_by,
                        record.ended_by,
                        record.status.value,
                        _ts(record.created_at),
                    ),
                )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return record.id

        return await self._run(_tx)

    async def get_freeze(self, freeze_id: str) -> Optional[FreezeRecord]:
        def _get(conn: sqlite3.Connection) -> Optional[FreezeRecord]:
            row = conn.execute(f"SELECT {_COLUMNS} FROM freeze_records WHERE id=?", (freeze_id,)).fetchone()
            return _row_to_record(row) if row else None

        return await self._run(_get)

    async def list_freezes(
        self,
        *,
        repository: Optional[str] = None,
        installation_id: Optional[int] = None,
        statuses: Optional[Iterable[FreezeStatus]] = None,
    ) -> List[FreezeRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if repository is not None:
            clauses.append("repository=?")
            params.append(repository)
        if installation_id is not None:
            clauses.append("installation_id=?")
            params.append(installation_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({','.join('?' for _ in values)})")
            params.extend(values)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM freeze_records{where} ORDER BY started_at, created_at"

        def _list(conn: sqlite3.Connection) -> List[FreezeRecord]:
            return [_row_to_record(r) for r in conn.execute(sql, params).fetchall()]

        return await self._run(_list)

    async def update_status(
        self,
        freeze_id: str,
        status: FreezeStatus,
        *,
        expected: FreezeStatus,
        ended_by: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[FreezeRecord]:
        def _update(conn: sqlite3.Connection) -> Optional[FreezeRecord]:
            cur = conn.execute(
                "UPDATE freeze_records SET status=?, ended_by=COALESCE(?, ended_by), "
                "ended_at=COALESCE(?, ended_at) WHERE id=? AND status=?",
                (status.value, ended_by, _ts(ended_at), freeze_id, expected.value),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(f"SELECT {_COLUMNS} FROM freeze_records WHERE id=?", (freeze_id,)).fetchone()
            return _row_to_record(row)

        return await self._run(_update)

    async def create_unlock(
        self,
        installation_id: int,
        repository: str,
        pr_number: int,
        actor: str,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> str:
        unlock = UnlockedPr(
            installation_id=installation_id,
            repository=repository,
            pr_number=pr_number,
            unlocked_by=actor,
            unlocked_at=at,
            reason=reason,
        )

        def _insert(conn: sqlite3.Connection) -> str:
            conn.execute(
                "INSERT OR REPLACE INTO unlocked_prs"
                "(id, repository, installation_id, pr_number, unlocked_by, unlocked_at, reason) "
                "VALUES (?,?,?,?,?,?,?)",
                (unlock.id, repository, installation_id, pr_number, actor, _ts(at), reason),
            )
            return unlock.id

        return await self._run(_insert)

    async def find_unlock(self, installation_id: int, repository: str, pr_number: int) -> Optional[UnlockedPr]:
        def _find(conn: sqlite3.Connection) -> Optional[UnlockedPr]:
            row = conn.execute(
                "SELECT id, repository, installation_id, pr_number, unlocked_by, unlocked_at, reason "
                "FROM unlocked_prs WHERE installation_id=? AND repository=? AND pr_number=?",
                (installation_id, repository, pr_number),
            ).fetchone()
            if row is None:
                return None
            return UnlockedPr(
                id=row["id"],
                installation_id=row["installation_id"],
                repository=row["repository"],
                pr_number=row["pr_number"],
                unlocked_by=row["unlocked_by"],
                unlocked_at=_dt(row["unlocked_at"]),
                reason=row["reason"],
            )

        return await self._run(_find)

    async def close(self) -> None:
        with self._mutex:
            self._conn.close()


__all__ = ["SQLiteFreezeStore"]
