import asyncio
from datetime import timedelta

import pytest

from freezegate.freezer.errors import (
    AdapterFailure,
    AdapterTimeout,
    FreezeAlreadyActive,
    InvalidTimestamp,
    NoActiveFreeze,
)
from freezegate.freezer.manager import FreezeManager
from freezegate.freezer.models import FreezeRecord, FreezeStatus
from freezegate.storage.memory import InMemoryFreezeStore

INST = 1
REPO = "acme/web"


@pytest.mark.asyncio
async def test_freeze_applies_protection_and_blocks_prs(manager, store, platform, t0):
    platform.add_pr(REPO, 1, "main")
    platform.add_pr(REPO, 2, "develop")
    outcome = await manager.freeze(INST, REPO, "alice", branch="main", duration=timedelta(hours=2), reason="deploy")
    rec = outcome.records[0]
    assert rec.status == FreezeStatus.ACTIVE
    assert rec.expires_at == t0 + timedelta(hours=2)
    assert (REPO, "main") in platform.protected
    assert platform.signal(REPO, 1) is True
    assert platform.signal(REPO, 2) is False
    assert outcome.warnings == []
    assert await manager.is_frozen(REPO, "main")
    assert not await manager.is_frozen(REPO, "develop")


@pytest.mark.asyncio
async def test_freeze_uses_default_duration_and_explicit_none(manager, t0):
    default = await manager.freeze(INST, REPO, "alice")
    assert default.records[0].expires_at == t0 + timedelta(hours=2)
    indefinite = await manager.freeze(INST, "acme/api", "alice", duration=None)
    assert indefinite.records[0].expires_at is None


@pytest.mark.asyncio
async def test_second_freeze_same_scope_conflicts(manager):
    await manager.freeze(INST, REPO, "alice")
    with pytest.raises(FreezeAlreadyActive):
        await manager.freeze(INST, REPO, "bob")
    # branch scope is independent of the whole-repository scope
    await manager.freeze(INST, REPO, "bob", branch="main")


@pytest.mark.asyncio
async def test_protection_failure_is_a_warning(manager, store, platform):
    platform.fail_protection.add(REPO)
    outcome = await manager.freeze(INST, REPO, "alice")
    assert outcome.ok
    assert outcome.warnings and "HTTP 502" in outcome.warnings[0]
    assert len(await store.find_active(REPO)) == 1


@pytest.mark.asyncio
async def test_unfreeze_scope_independence(manager, store, platform):
    platform.add_pr(REPO, 1, "main")
    await manager.freeze(INST, REPO, "alice")
    await manager.freeze(INST, REPO, "alice", branch="main")

    ended = await manager.unfreeze(INST, REPO, "bob")
    assert [r.branch for r in ended.records] == [None]
    assert ended.records[0].ended_by == "bob"
    remaining = await store.find_active(REPO)
    assert [r.branch for r in remaining] == ["main"]
    assert (REPO, None) not in platform.protected
    assert (REPO, "main") in platform.protected
    assert platform.signal(REPO, 1) is True

    await manager.unfreeze(INST, REPO, "bob", branch="main")
    assert platform.signal(REPO, 1) is False
    with pytest.raises(NoActiveFreeze):
        await manager.unfreeze(INST, REPO, "bob", branch="main")


@pytest.mark.asyncio
async def test_freeze_all_defaults_to_installation_repositories(manager, platform):
    platform.repositories = ["acme/a", "acme/b", "acme/c"]
    await manager.freeze(INST, "acme/b", "alice")
    batch = await manager.freeze_all(INST, "alice")
    assert [o.repository for o in batch.outcomes] == ["acme/a", "acme/b", "acme/c"]
    assert [o.repository for o in batch.succeeded] == ["acme/a", "acme/c"]
    assert batch.failed[0].error_code == "freeze_already_active"
    assert not batch.ok


@pytest.mark.asyncio
async def test_freeze_all_isolates_failures(manager, platform):
    platform.fail_list.add("acme/b")
    batch = await manager.freeze_all(INST, "alice", repositories=["acme/a", "acme/b"])
    assert batch.ok
    assert batch.outcomes[1].warnings


@pytest.mark.asyncio
async def test_unfreeze_all_ends_every_scope(manager, store):
    await manager.freeze(INST, "acme/a", "alice")
    await manager.freeze(INST, "acme/a", "alice", branch="main")
    await manager.freeze(INST, "acme/b", "alice", branch="release")
    batch = await manager.unfreeze_all(INST, "bob")
    assert batch.ok
    assert sorted(o.repository for o in batch.outcomes) == ["acme/a", "acme/b"]
    assert await store.find_active() == []

    empty = await manager.unfreeze_all(INST, "bob", repositories=["acme/a"])
    assert empty.failed[0].error_code == "no_active_freeze"


@pytest.mark.asyncio
async def test_unlock_requires_active_freeze(manager, platform, t0):
    platform.add_pr(REPO, 5, "main")
    with pytest.raises(NoActiveFreeze):
        await manager.unlock_pr(INST, REPO, 5, "alice")
    await manager.freeze(INST, REPO, "alice", now=t0)
    assert platform.signal(REPO, 5) is True
    await manager.unlock_pr(INST, REPO, 5, "alice", reason="hotfix", now=t0 + timedelta(minutes=1))
    assert platform.signal(REPO, 5) is False


@pytest.mark.asyncio
async def test_schedule_then_tick_promotes_and_expires(manager, store, platform, t0):
    platform.add_pr(REPO, 1, "main")
    start = t0 + timedelta(hours=1)
    outcome = await manager.schedule_freeze(
        INST, REPO, "alice", start_at=start, duration=timedelta(hours=1), branch="main"
    )
    rec = outcome.records[0]
    assert rec.status == FreezeStatus.SCHEDULED
    assert platform.calls == []

    quiet = await manager.tick(now=t0)
    assert quiet.activated == [] and quiet.expired == []

    promoted = await manager.tick(now=start)
    assert [r.id for r in promoted.activated] == [rec.id]
    assert (REPO, "main") in platform.protected
    assert platform.signal(REPO, 1) is True

    again = await manager.tick(now=start)
    assert again.activated == []

    expired = await manager.tick(now=start + timedelta(hours=1))
    assert [r.id for r in expired.expired] == [rec.id]
    assert (await store.get_freeze(rec.id)).status == FreezeStatus.EXPIRED
    assert (REPO, "main") not in platform.protected
    assert platform.signal(REPO, 1) is False
    assert expired.ok


@pytest.mark.asyncio
async def test_schedule_in_the_past_is_immediate(manager, platform, t0):
    outcome = await manager.schedule_freeze(
        INST, REPO, "alice", start_at=t0 - timedelta(minutes=5), expires_at=t0 + timedelta(hours=1)
    )
    assert outcome.records[0].status == FreezeStatus.ACTIVE
    assert (REPO, None) in platform.protected


@pytest.mark.asyncio
async def test_schedule_with_elapsed_window_is_rejected(manager, store, platform, t0):
    with pytest.raises(InvalidTimestamp):
        await manager.schedule_freeze(
            INST, REPO, "alice", start_at=t0 - timedelta(hours=3), expires_at=t0 - timedelta(hours=2)
        )
    with pytest.raises(InvalidTimestamp):
        await manager.schedule_freeze(
            INST, REPO, "alice", start_at=t0 - timedelta(hours=3), duration=timedelta(hours=1)
        )
    assert await store.find_open(REPO) == []
    assert platform.protected == set()


@pytest.mark.asyncio
async def test_tick_expiry_keeps_protection_when_scope_still_held(manager, store, platform, t0):
    first = await manager.freeze(INST, REPO, "alice", duration=timedelta(hours=1), now=t0)
    later = t0 + timedelta(hours=2)
    # a new freeze lands after the first lapsed but before any tick ran
    await manager.freeze(INST, REPO, "bob", duration=timedelta(hours=4), now=later)
    report = await manager.tick(now=later)
    assert [r.id for r in report.expired] == [first.records[0].id]
    assert (REPO, None) in platform.protected


@pytest.mark.asyncio
async def test_tick_reasserts_drifted_protection(manager, platform, t0):
    await manager.freeze(INST, REPO, "alice", now=t0)
    platform.protected.clear()
    await manager.tick(now=t0 + timedelta(minutes=1))
    assert (REPO, None) in platform.protected


@pytest.mark.asyncio
async def test_tick_skips_conflicting_promotion(manager, store, t0):
    start = t0 + timedelta(hours=1)
    scheduled = await manager.schedule_freeze(
        INST, REPO, "bob", start_at=start, duration=timedelta(hours=1), now=t0
    )
    sched_id = scheduled.records[0].id
    # a concurrent writer slipped an open-ended freeze into the same scope
    holder = FreezeRecord(repository=REPO, installation_id=INST, started_at=t0, initiated_by="carol")
    store._freezes[holder.id] = holder

    report = await manager.tick(now=start)
    assert [r.id for r in report.conflicts] == [sched_id]
    assert report.activated == []
    assert (await store.get_freeze(sched_id)).status == FreezeStatus.SCHEDULED


@pytest.mark.asyncio
async def test_status_lists_active_and_scheduled(manager, t0):
    await manager.freeze(INST, REPO, "alice", now=t0)
    await manager.schedule_freeze(
        INST, REPO, "alice", start_at=t0 + timedelta(days=1), duration=timedelta(hours=1), branch="main", now=t0
    )
    entries = await manager.status(INST, [REPO, "acme/quiet"], now=t0)
    assert entries[0].frozen
    assert [r.branch for r in entries[0].scheduled] == ["main"]
    assert not entries[1].frozen
    assert entries[1].scheduled == []


@pytest.mark.asyncio
async def test_store_failure_is_hard(manager, store, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "create_freeze", broken)
    with pytest.raises(AdapterFailure):
        await manager.freeze(INST, REPO, "alice")


class SlowCommitStore(InMemoryFreezeStore):
    """Commits the record, then answers after the caller's deadline."""

    async def create_freeze(self, record, *, now):
        freeze_id = await super().create_freeze(record, now=now)
        await asyncio.sleep(1)
        return freeze_id


@pytest.mark.asyncio
async def test_create_timeout_after_commit_keeps_freeze(platform, test_settings, t0):
    store = SlowCommitStore()
    manager = FreezeManager(store, platform, settings=test_settings, clock=lambda: t0)
    manager.timeout = 0.05
    outcome = await manager.freeze(INST, REPO, "alice")
    assert outcome.ok
    assert "it was saved" in outcome.warnings[0]
    assert len(await store.find_active(REPO)) == 1
    assert (REPO, None) in platform.protected


@pytest.mark.asyncio
async def test_create_timeout_without_commit_fails(platform, test_settings, t0):
    class HangingStore(InMemoryFreezeStore):
        async def create_freeze(self, record, *, now):
            await asyncio.sleep(1)
            return await super().create_freeze(record, now=now)

    store = HangingStore()
    manager = FreezeManager(store, platform, settings=test_settings, clock=lambda: t0)
    manager.timeout = 0.05
    with pytest.raises(AdapterTimeout):
        await manager.freeze(INST, REPO, "alice")
    assert await store.find_active(REPO) == []
