from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Callable, List, Optional

from common.domain import Task, TaskStatus, utc_now
from common.repository import Repository
from common.timezones import project, resolve_timezone, to_utc


class InvalidTextError(ValueError):
    """Task text is empty after trimming."""


def _clean_text(text: Optional[str]) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        raise InvalidTextError("task text is empty")
    return trimmed


def project_task(task: Task, tz: tzinfo) -> Task:
    """Return a copy of task with every instant expressed in tz."""
    return replace(
        task,
        due_at=project(task.due_at, tz),
        remind_at=project(task.remind_at, tz),
        notified_at=project(task.notified_at, tz),
        created_at=project(task.created_at, tz),
        updated_at=project(task.updated_at, tz),
    )


class TaskService:
    """Task lifecycle on top of a Repository.

    Inputs are normalised to UTC before they reach storage; results are
    projected into the caller's timezone. Validation errors
    (InvalidTextError, InvalidTimezoneError) are raised before any storage
    access, repository errors propagate unchanged.
    """

    def __init__(self, repo: Repository, now: Callable[[], datetime] = utc_now) -> None:
        self.repo = repo
        self.now = now

    async def create(
        self,
        user_id: int,
        text: str,
        due_at: Optional[datetime] = None,
        remind_at: Optional[datetime] = None,
        tz: str = "UTC",
    ) -> Task:
        trimmed = _clean_text(text)
        loc = resolve_timezone(tz)
        created = await self.repo.create_task(Task(
            user_id=user_id,
            text=trimmed,
            status=TaskStatus.active,
            due_at=to_utc(due_at),
            remind_at=to_utc(remind_at),
        ))
        return project_task(created, loc)

    async def list_active(self, user_id: int, tz: str = "UTC") -> List[Task]:
        loc = resolve_timezone(tz)
        items = await self.repo.list_active(user_id)
        return [project_task(t, loc) for t in items]

    async def list_tasks(self, user_id: int, status: Optional[TaskStatus] = None, tz: str = "UTC") -> List[Task]:
        loc = resolve_timezone(tz)
        items = await self.repo.list_tasks(user_id, status)
        return [project_task(t, loc) for t in items]

    async def get_task(self, task_id: int, tz: str = "UTC") -> Task:
        loc = resolve_timezone(tz)
        return project_task(await self.repo.get_task(task_id), loc)

    async def mark_done(self, task_id: int, tz: str = "UTC") -> Task:
        loc = resolve_timezone(tz)
        return project_task(await self.repo.mark_done(task_id), loc)

    async def delete(self, task_id: int) -> None:
        await self.repo.delete_task(task_id)

    async def set_due(self, task_id: int, due_at: Optional[datetime], tz: str = "UTC") -> Task:
        loc = resolve_timezone(tz)
        return project_task(await self.repo.set_due(task_id, to_utc(due_at)), loc)

    async def set_remind(self, task_id: int, remind_at: Optional[datetime], tz: str = "UTC") -> Task:
        loc = resolve_timezone(tz)
        return project_task(await self.repo.set_remind(task_id, to_utc(remind_at)), loc)

    async def update(self, task_id: int, tz: str = "UTC", **changes) -> Task:
        """General partial update used by the HTTP front end."""
        if "text" in changes:
            changes["text"] = _clean_text(changes["text"])
        loc = resolve_timezone(tz)
        for key in ("due_at", "remind_at"):
            if key in changes:
                changes[key] = to_utc(changes[key])
        return project_task(await self.repo.update_task(task_id, **changes), loc)

    async def list_due_for_notify(self, now: Optional[datetime] = None) -> List[Task]:
        """Claim due reminders. Results stay in UTC.

        Nothing in this service schedules the call; a notifier owning the
        delivery side is expected to resolve each owner's timezone itself.
        """
        moment = now if now is not None else self.now()
        return await self.repo.list_due_for_notify(to_utc(moment))
