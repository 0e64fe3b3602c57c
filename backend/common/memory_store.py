from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List, Optional

from common.domain import Task, TaskStatus, User, utc_now
from common.repository import NotFoundError, Repository, check_task_changes
from common.timezones import to_utc


class MemoryRepository(Repository):
    """
    Volatile repository. A single exclusive lock guards every operation,
    including the read-and-mark step of list_due_for_notify.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = Lock()
        self._clock = clock
        self._next_user_id = 1
        self._next_task_id = 1
        self._users: Dict[int, User] = {}
        self._tasks: Dict[int, Task] = {}

    def _require_task(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"task {task_id}")
        return task

    # --- users ---

    async def create_user(self, user: User) -> User:
        with self._lock:
            stored = replace(
                user,
                id=self._next_user_id,
                timezone=user.timezone or "UTC",
                created_at=to_utc(self._clock()),
            )
            self._next_user_id += 1
            self._users[stored.id] = stored
            return replace(stored)

    async def get_user(self, user_id: int) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError(f"user {user_id}")
            return replace(user)

    async def get_user_by_telegram_id(self, telegram_user_id: int) -> User:
        with self._lock:
            for user in self._users.values():
                if user.telegram_user_id == telegram_user_id:
                    return replace(user)
        raise NotFoundError(f"telegram user {telegram_user_id}")

    async def list_users(self) -> List[User]:
        with self._lock:
            return [replace(u) for _, u in sorted(self._users.items())]

    # --- tasks ---

    async def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.user_id not in self._users:
                raise NotFoundError(f"user {task.user_id}")
            now = to_utc(self._clock())
            stored = replace(
                task,
                id=self._next_task_id,
                status=TaskStatus(task.status or TaskStatus.active),
                due_at=to_utc(task.due_at),
                remind_at=to_utc(task.remind_at),
                notified_at=to_utc(task.notified_at),
                created_at=now,
                updated_at=now,
            )
            self._next_task_id += 1
            self._tasks[stored.id] = stored
            return replace(stored)

    async def get_task(self, task_id: int) -> Task:
        with self._lock:
            return replace(self._require_task(task_id))

    async def list_tasks(self, user_id: int, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._lock:
            items = [
                t for _, t in sorted(self._tasks.items())
                if t.user_id == user_id and (status is None or t.status == status)
            ]
            return [replace(t) for t in items]

    def _mutate(self, task_id: int, **fields) -> Task:
        with self._lock:
            current = self._require_task(task_id)
            updated = replace(current, updated_at=to_utc(self._clock()), **fields)
            self._tasks[task_id] = updated
            return replace(updated)

    async def mark_done(self, task_id: int) -> Task:
        return self._mutate(task_id, status=TaskStatus.done)

    async def delete_task(self, task_id: int) -> None:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                raise NotFoundError(f"task {task_id}")

    async def set_due(self, task_id: int, due_at: Optional[datetime]) -> Task:
        return self._mutate(task_id, due_at=to_utc(due_at))

    async def set_remind(self, task_id: int, remind_at: Optional[datetime]) -> Task:
        return self._mutate(task_id, remind_at=to_utc(remind_at), notified_at=None)

    async def update_task(self, task_id: int, **changes) -> Task:
        check_task_changes(changes)
        fields = dict(changes)
        for key in ("due_at", "remind_at"):
            if key in fields:
                fields[key] = to_utc(fields[key])
        if "status" in fields:
            fields["status"] = TaskStatus(fields["status"])
        if "remind_at" in fields:
            fields["notified_at"] = None
        return self._mutate(task_id, **fields)

    async def list_due_for_notify(self, now: datetime) -> List[Task]:
        now = to_utc(now)
        claimed: List[Task] = []
        with self._lock:
            for task_id, task in sorted(self._tasks.items()):
                if task.status != TaskStatus.active:
                    continue
                if task.remind_at is None or task.remind_at > now:
                    continue
                if task.notified_at is not None:
                    continue
                marked = replace(task, notified_at=now, updated_at=now)
                self._tasks[task_id] = marked
                claimed.append(replace(marked))
        return claimed
