import asyncio
from datetime import timedelta

import pytest

from freezegate.config.settings import Settings
from freezegate.freezer.errors import FreezeAlreadyActive
from freezegate.freezer.models import FreezeRecord, FreezeStatus
from freezegate.storage import InMemoryFreezeStore, SQLiteFreezeStore, get_store


@pytest.fixture(params=["memory", "sqlite"])
def freeze_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryFreezeStore()
        return
    store = SQLiteFreezeStore(str(tmp_path / "freeze.sqlite"))
    yield store
    asyncio.run(store.close())


def _record(t0, branch=None, status=FreezeStatus.ACTIVE, start=None, hours=2, repository="acme/web"):
    start = start or t0
    return FreezeRecord(
        repository=repository,
        installation_id=1,
        branch=branch,
        started_at=start,
        expires_at=start + timedelta(hours=hours) if hours else None,
        initiated_by="alice",
        status=status,
    )


@pytest.mark.asyncio
async def test_create_and_get_roundtrip(freeze_store, t0):
    rec = _record(t0, branch="main")
    rec.reason = "deploy"
    freeze_id = await freeze_store.create_freeze(rec, now=t0)
    loaded = await freeze_store.get_freeze(freeze_id)
    assert loaded.id == rec.id
    assert loaded.branch == "main"
    assert loaded.started_at == t0
    assert loaded.expires_at == t0 + timedelta(hours=2)
    assert loaded.status == FreezeStatus.ACTIVE
    assert loaded.reason == "deploy"
    assert await freeze_store.get_freeze("missing") is None


@pytest.mark.asyncio
async def test_whole_repo_and_branch_scopes_coexist(freeze_store, t0):
    await freeze_store.create_freeze(_record(t0), now=t0)
    await freeze_store.create_freeze(_record(t0, branch="main"), now=t0)
    await freeze_store.create_freeze(_record(t0, branch="release"), now=t0)
    assert len(await freeze_store.find_active("acme/web")) == 3
    assert [r.branch for r in await freeze_store.find_active("acme/web", None)] == [None]
    assert [r.branch for r in await freeze_store.find_active("acme/web", "main")] == ["main"]


@pytest.mark.asyncio
async def test_overlap_in_same_scope_rejected(freeze_store, t0):
    await freeze_store.create_freeze(_record(t0, branch="main"), now=t0)
    with pytest.raises(FreezeAlreadyActive) as exc:
        await freeze_store.create_freeze(_record(t0 + timedelta(hours=1), branch="main"), now=t0)
    assert exc.value.branch == "main"
    # indefinite freeze overlaps everything later
    await freeze_store.create_freeze(_record(t0, hours=None, repository="acme/api"), now=t0)
    with pytest.raises(FreezeAlreadyActive):
        await freeze_store.create_freeze(
            _record(t0 + timedelta(days=3), status=FreezeStatus.SCHEDULED, repository="acme/api"), now=t0
        )


@pytest.mark.asyncio
async def test_non_overlapping_schedule_allowed(freeze_store, t0):
    await freeze_store.create_freeze(_record(t0, branch="main"), now=t0)
    later = _record(t0 + timedelta(hours=3), branch="main", status=FreezeStatus.SCHEDULED)
    await freeze_store.create_freeze(later, now=t0)
    open_records = await freeze_store.find_open("acme/web")
    assert [r.status for r in open_records] == [FreezeStatus.ACTIVE, FreezeStatus.SCHEDULED]


@pytest.mark.asyncio
async def test_lapsed_active_record_does_not_block(freeze_store, t0):
    await freeze_store.create_freeze(_record(t0), now=t0)
    later = t0 + timedelta(hours=3)
    # still "active" until a tick expires it, but its window is over
    await freeze_store.create_freeze(_record(later), now=later)


@pytest.mark.asyncio
async def test_update_status_is_compare_and_set(freeze_store, t0):
    rec = _record(t0)
    await freeze_store.create_freeze(rec, now=t0)
    ended = await freeze_store.update_status(
        rec.id, FreezeStatus.ENDED, expected=FreezeStatus.ACTIVE, ended_by="bob", ended_at=t0
    )
    assert ended.status == FreezeStatus.ENDED
    assert ended.ended_by == "bob"
    assert ended.ended_at == t0
    # second writer loses
    again = await freeze_store.update_status(rec.id, FreezeStatus.EXPIRED, expected=FreezeStatus.ACTIVE)
    assert again is None
    assert (await freeze_store.get_freeze(rec.id)).status == FreezeStatus.ENDED
    # ended scope accepts a new freeze
    await freeze_store.create_freeze(_record(t0), now=t0)


@pytest.mark.asyncio
async def test_due_queries(freeze_store, t0):
    active = _record(t0, hours=1)
    scheduled = _record(t0 + timedelta(hours=2), branch="main", status=FreezeStatus.SCHEDULED)
    await freeze_store.create_freeze(active, now=t0)
    await freeze_store.create_freeze(scheduled, now=t0)
    assert await freeze_store.find_expiring(t0) == []
    assert [r.id for r in await freeze_store.find_expiring(t0 + timedelta(hours=1))] == [active.id]
    assert await freeze_store.find_scheduled_due(t0) == []
    assert [r.id for r in await freeze_store.find_scheduled_due(t0 + timedelta(hours=2))] == [scheduled.id]


@pytest.mark.asyncio
async def test_unlock_replaced_on_reunlock(freeze_store, t0):
    assert await freeze_store.find_unlock(1, "acme/web", 7) is None
    await freeze_store.create_unlock(1, "acme/web", 7, "alice", at=t0, reason="hotfix")
    later = t0 + timedelta(minutes=5)
    await freeze_store.create_unlock(1, "acme/web", 7, "bob", at=later)
    unlock = await freeze_store.find_unlock(1, "acme/web", 7)
    assert unlock.unlocked_at == later
    assert unlock.unlocked_by == "bob"
    assert await freeze_store.find_unlock(2, "acme/web", 7) is None


@pytest.mark.asyncio
async def test_concurrent_creates_only_one_wins(freeze_store, t0):
    results = await asyncio.gather(
        *(freeze_store.create_freeze(_record(t0, branch="main"), now=t0) for _ in range(5)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, str)) == 1
    assert sum(1 for r in results if isinstance(r, FreezeAlreadyActive)) == 4


def test_get_store_backend_selection(tmp_path):
    assert isinstance(get_store(Settings(STORE_BACKEND="memory")), InMemoryFreezeStore)
    sqlite_store = get_store(Settings(STORE_BACKEND="sqlite", SQLITE_PATH=str(tmp_path / "a" / "f.sqlite")))
    assert isinstance(sqlite_store, SQLiteFreezeStore)
    asyncio.run(sqlite_store.close())
    with pytest.raises(ValueError):
        get_store(Settings(STORE_BACKEND="redis"))
