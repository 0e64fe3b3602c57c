import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from common.domain import Task, TaskStatus, User, utc_now
from common.models import Base, TaskModel, UserModel
from common.repository import NotFoundError, Repository, check_task_changes
from common.timezones import to_utc

logger = logging.getLogger(__name__)

tasks = TaskModel.__table__
users = UserModel.__table__


def _task_from_row(row: Any) -> Task:
    # sqlite hands back naive datetimes; every stored instant is UTC.
    return Task(
        id=int(row.id),
        user_id=int(row.user_id),
        text=row.text,
        status=TaskStatus(row.status),
        due_at=to_utc(row.due_at),
        remind_at=to_utc(row.remind_at),
        notified_at=to_utc(row.notified_at),
        created_at=to_utc(row.created_at),
        updated_at=to_utc(row.updated_at),
    )


def _user_from_row(row: Any) -> User:
    return User(
        id=int(row.id),
        telegram_user_id=int(row.telegram_user_id),
        chat_id=int(row.chat_id),
        timezone=row.timezone or "UTC",
        created_at=to_utc(row.created_at),
    )


class SqlRepository(Repository):
    """
    Relational repository on a SQLAlchemy async engine.

    Each mutation is a single statement (or a single transaction), and the
    reminder claim is one UPDATE ... RETURNING so overlapping claims never
    return the same task twice.
    """

    def __init__(self, engine: AsyncEngine, clock: Callable[[], datetime] = utc_now) -> None:
        self._engine = engine
        self._clock = clock
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, clock: Callable[[], datetime] = utc_now) -> "SqlRepository":
        parsed = make_url(url)
        kwargs: dict = {}
        if parsed.get_backend_name() == "sqlite":
            database = parsed.database or ""
            if database in ("", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(database).parent.mkdir(parents=True, exist_ok=True)
        return cls(create_async_engine(url, **kwargs), clock=clock)

    async def init_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    def _now(self) -> datetime:
        return to_utc(self._clock())

    # --- users ---

    async def create_user(self, user: User) -> User:
        stmt = (
            insert(users)
            .values(
                telegram_user_id=user.telegram_user_id,
                chat_id=user.chat_id,
                timezone=user.timezone or "UTC",
                created_at=self._now(),
            )
            .returning(*users.c)
        )
        async with self._sessions.begin() as db:
            row = (await db.execute(stmt)).one()
        return _user_from_row(row)

    async def get_user(self, user_id: int) -> User:
        async with self._sessions() as db:
            row = (await db.execute(select(users).where(users.c.id == user_id))).first()
        if row is None:
            raise NotFoundError(f"user {user_id}")
        return _user_from_row(row)

    async def get_user_by_telegram_id(self, telegram_user_id: int) -> User:
        stmt = select(users).where(users.c.telegram_user_id == telegram_user_id)
        async with self._sessions() as db:
            row = (await db.execute(stmt)).first()
        if row is None:
            raise NotFoundError(f"telegram user {telegram_user_id}")
        return _user_from_row(row)

    async def list_users(self) -> List[User]:
        async with self._sessions() as db:
            rows = (await db.execute(select(users).order_by(users.c.id))).all()
        return [_user_from_row(r) for r in rows]

    # --- tasks ---

    async def create_task(self, task: Task) -> Task:
        now = self._now()
        async with self._sessions.begin() as db:
            owner = (await db.execute(select(users.c.id).where(users.c.id == task.user_id))).first()
            if owner is None:
                raise NotFoundError(f"user {task.user_id}")
            stmt = (
                insert(tasks)
                .values(
                    user_id=task.user_id,
                    text=task.text,
                    status=TaskStatus(task.status or TaskStatus.active),
                    due_at=to_utc(task.due_at),
                    remind_at=to_utc(task.remind_at),
                    notified_at=to_utc(task.notified_at),
                    created_at=now,
                    updated_at=now,
                )
                .returning(*tasks.c)
            )
            row = (await db.execute(stmt)).one()
        return _task_from_row(row)

    async def get_task(self, task_id: int) -> Task:
        async with self._sessions() as db:
            row = (await db.execute(select(tasks).where(tasks.c.id == task_id))).first()
        if row is None:
            raise NotFoundError(f"task {task_id}")
        return _task_from_row(row)

    async def list_tasks(self, user_id: int, status: Optional[TaskStatus] = None) -> List[Task]:
        stmt = select(tasks).where(tasks.c.user_id == user_id).order_by(tasks.c.id)
        if status is not None:
            stmt = stmt.where(tasks.c.status == TaskStatus(status))
        async with self._sessions() as db:
            rows = (await db.execute(stmt)).all()
        return [_task_from_row(r) for r in rows]

    async def _update_returning(self, task_id: int, **values) -> Task:
        stmt = (
            update(tasks)
            .where(tasks.c.id == task_id)
            .values(updated_at=self._now(), **values)
            .returning(*tasks.c)
        )
        async with self._sessions.begin() as db:
            row = (await db.execute(stmt)).first()
        if row is None:
            raise NotFoundError(f"task {task_id}")
        return _task_from_row(row)

    async def mark_done(self, task_id: int) -> Task:
        return await self._update_returning(task_id, status=TaskStatus.done)

    async def delete_task(self, task_id: int) -> None:
        async with self._sessions.begin() as db:
            result = await db.execute(delete(tasks).where(tasks.c.id == task_id))
        if result.rowcount == 0:
            raise NotFoundError(f"task {task_id}")

    async def set_due(self, task_id: int, due_at: Optional[datetime]) -> Task:
        return await self._update_returning(task_id, due_at=to_utc(due_at))

    async def set_remind(self, task_id: int, remind_at: Optional[datetime]) -> Task:
        return await self._update_returning(task_id, remind_at=to_utc(remind_at), notified_at=None)

    async def update_task(self, task_id: int, **changes) -> Task:
        check_task_changes(changes)
        values = dict(changes)
        for key in ("due_at", "remind_at"):
            if key in values:
                values[key] = to_utc(values[key])
        if "status" in values:
            values["status"] = TaskStatus(values["status"])
        if "remind_at" in values:
            values["notified_at"] = None
        return await self._update_returning(task_id, **values)

    async def list_due_for_notify(self, now: datetime) -> List[Task]:
        now = to_utc(now)
        stmt = (
            update(tasks)
            .where(
                tasks.c.status == TaskStatus.active,
                tasks.c.remind_at.is_not(None),
                tasks.c.remind_at <= now,
                tasks.c.notified_at.is_(None),
            )
            .values(notified_at=now, updated_at=now)
            .returning(*tasks.c)
        )
        async with self._sessions.begin() as db:
            rows = (await db.execute(stmt)).all()
        claimed = sorted((_task_from_row(r) for r in rows), key=lambda t: t.id)
        if claimed:
            logger.info("Claimed %d task(s) for notification", len(claimed))
        return claimed
