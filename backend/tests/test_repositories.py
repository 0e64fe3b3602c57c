import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from common.config import Settings
from common.domain import Task, TaskStatus, User
from common.memory_store import MemoryRepository
from common.repository import NotFoundError, build_repository
from common.sql_store import SqlRepository

UTC = timezone.utc


async def _with_user(repo, telegram_user_id=100):
    return await repo.create_user(User(telegram_user_id=telegram_user_id, chat_id=telegram_user_id + 1))


def test_users_round_trip(make_repo):
    async def _run():
        repo = await make_repo()
        try:
            user = await repo.create_user(User(telegram_user_id=7, chat_id=70, timezone=""))
            assert user.id > 0
            assert user.timezone == "UTC"
            assert user.created_at.tzinfo is not None

            assert (await repo.get_user_by_telegram_id(7)).id == user.id
            assert (await repo.get_user(user.id)).chat_id == 70
            with pytest.raises(NotFoundError):
                await repo.get_user_by_telegram_id(8)
            with pytest.raises(NotFoundError):
                await repo.get_user(user.id + 1)

            other = await repo.create_user(User(telegram_user_id=9, chat_id=90, timezone="Europe/Moscow"))
            assert [u.id for u in await repo.list_users()] == [user.id, other.id]
        finally:
            await repo.close()

    asyncio.run(_run())


def test_create_and_list_tasks(make_repo):
    async def _run():
        repo = await make_repo()
        try:
            user = await _with_user(repo)
            due = datetime(2026, 1, 2, 7, 0, tzinfo=UTC)
            first = await repo.create_task(Task(user_id=user.id, text="one", due_at=due))
            second = await repo.create_task(Task(user_id=user.id, text="two"))

            assert first.id > 0 and second.id > first.id
            assert first.status == TaskStatus.active
            assert first.due_at == due
            assert first.due_at.utcoffset() == timedelta(0)
            assert first.created_at == first.updated_at

            await repo.mark_done(second.id)
            assert [t.id for t in await repo.list_active(user.id)] == [first.id]
            assert [t.id for t in await repo.list_tasks(user.id)] == [first.id, second.id]
            assert [t.id for t in await repo.list_tasks(user.id, TaskStatus.done)] == [second.id]
            assert await repo.list_active(user.id + 1) == []
        finally:
            await repo.close()

    asyncio.run(_run())


def test_create_task_requires_existing_user(make_repo):
    async def _run():
        repo = await make_repo()
        try:
            with pytest.raises(NotFoundError):
                await repo.create_task(Task(user_id=404, text="orphan"))
        finally:
            await repo.close()

    asyncio.run(_run())


def test_missing_task_raises_not_found(make_repo):
    async def _run():
        repo = await make_repo()
        try:
            for call in (
                repo.get_task(1),
                repo.mark_done(1),
                repo.delete_task(1),
                repo.set_due(1, None),
                repo.set_remind(1, None),
                repo.update_task(1, text="x"),
            ):
                with pytest.raises(NotFoundError):
                    await call
        finally:
            await repo.close()

    asyncio.run(_run())


def test_mutations_touch_updated_at(make_repo, clock):
    async def _run():
        repo = await make_repo()
        try:
            user = await _with_user(repo)
            task = await repo.create_task(Task(user_id=user.id, text="t"))
            clock.current = clock.current + timedelta(minutes=10)

            due = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)
            updated = await repo.set_due(task.id, due)
            assert updated.due_at == due
            assert updated.updated_at == clock.current
            assert updated.created_at == task.created_at

            cleared = await repo.set_due(task.id, None)
            assert cleared.due_at is None

            await repo.delete_task(task.id)
            with pytest.raises(NotFoundError):
                await repo.get_task(task.id)
        finally:
            await repo.close()

    asyncio.run(_run())


def test_claim_is_atomic_and_selective(make_repo, clock):
    async def _run():
        repo = await make_repo()
        try:
            user = await _with_user(repo)
            now = clock.current
            due = await repo.create_task(Task(user_id=user.id, text="due", remind_at=now - timedelta(minutes=1)))
            exact = await repo.create_task(Task(user_id=user.id, text="exact", remind_at=now))
            future = await repo.create_task(Task(user_id=user.id, text="future", remind_at=now + timedelta(minutes=1)))
            await repo.create_task(Task(user_id=user.id, text="no reminder"))
            closed = await repo.create_task(Task(user_id=user.id, text="closed", remind_at=now - timedelta(hours=1)))
            await repo.mark_done(closed.id)

            claimed = await repo.list_due_for_notify(now)
            assert [t.id for t in claimed] == [due.id, exact.id]
            assert all(t.notified_at == now for t in claimed)

            assert await repo.list_due_for_notify(now) == []
            later = await repo.list_due_for_notify(now + timedelta(days=1))
            assert [t.id for t in later] == [future.id]
        finally:
            await repo.close()

    asyncio.run(_run())


def test_concurrent_claims_never_overlap(memory_repo, clock):
    async def _seed():
        user = await _with_user(memory_repo)
        for i in range(20):
            await memory_repo.create_task(Task(
                user_id=user.id, text=f"r{i}", remind_at=clock.current - timedelta(minutes=1),
            ))

    asyncio.run(_seed())

    def _claim():
        return asyncio.run(memory_repo.list_due_for_notify(clock.current))

    with ThreadPoolExecutor(max_workers=4) as pool:
        batches = list(pool.map(lambda _: _claim(), range(8)))

    ids = [t.id for batch in batches for t in batch]
    assert len(ids) == 20
    assert len(set(ids)) == 20


def test_set_remind_clears_notified(make_repo, clock):
    async def _run():
        repo = await make_repo()
        try:
            user = await _with_user(repo)
            past = clock.current - timedelta(minutes=1)
            task = await repo.create_task(Task(user_id=user.id, text="t", remind_at=past))
            await repo.list_due_for_notify(clock.current)
            assert (await repo.get_task(task.id)).notified_at is not None

            rearmed = await repo.set_remind(task.id, past)
            assert rearmed.notified_at is None
            assert [t.id for t in await repo.list_due_for_notify(clock.current)] == [task.id]

            renamed = await repo.update_task(task.id, text="renamed")
            assert renamed.notified_at is not None
            via_update = await repo.update_task(task.id, remind_at=past)
            assert via_update.notified_at is None
        finally:
            await repo.close()

    asyncio.run(_run())


def test_update_task_rejects_unknown_fields(make_repo):
    async def _run():
        repo = await make_repo()
        try:
            user = await _with_user(repo)
            task = await repo.create_task(Task(user_id=user.id, text="t"))
            with pytest.raises(ValueError):
                await repo.update_task(task.id, notified_at=None)
            done = await repo.update_task(task.id, status="done", text="closed")
            assert done.status == TaskStatus.done
            assert done.text == "closed"
        finally:
            await repo.close()

    asyncio.run(_run())


@pytest.mark.parametrize("storage,expected", [
    ("memory", MemoryRepository),
    ("SQL", SqlRepository),
    ("redis", MemoryRepository),
    ("", MemoryRepository),
])
def test_build_repository_selects_backend(storage, expected):
    repo = build_repository(Settings(STORAGE=storage, DATABASE_URL="sqlite+aiosqlite://"))
    assert isinstance(repo, expected)
    asyncio.run(repo.close())


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_overlapping_claims_split_the_due_tasks(backend, clock, tmp_path):
    async def _run():
        if backend == "memory":
            repo = MemoryRepository(clock=clock)
        else:
            repo = SqlRepository.from_url(f"sqlite+aiosqlite:///{tmp_path / 'claims.db'}", clock=clock)
            await repo.init_schema()
        try:
            user = await _with_user(repo)
            for i in range(10):
                await repo.create_task(Task(
                    user_id=user.id, text=f"r{i}", remind_at=clock.current - timedelta(minutes=1),
                ))
            batches = await asyncio.gather(*(repo.list_due_for_notify(clock.current) for _ in range(5)))
        finally:
            await repo.close()
        ids = [t.id for batch in batches for t in batch]
        assert len(ids) == 10
        assert len(set(ids)) == 10

    asyncio.run(_run())
