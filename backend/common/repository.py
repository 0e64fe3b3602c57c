from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from common.domain import Task, TaskStatus, User

if TYPE_CHECKING:
    from common.config import Settings

logger = logging.getLogger(__name__)

# Fields a general task update may touch.
UPDATABLE_TASK_FIELDS = frozenset({"text", "status", "due_at", "remind_at"})


class NotFoundError(LookupError):
    """The addressed user or task does not exist."""


class Repository(ABC):
    """Storage contract for users and tasks.

    Every instant is persisted and returned in UTC. Implementations must be
    safe to share between the HTTP front end and the long-poll loop.
    """

    # --- users ---

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Persist a new user; an empty timezone is stored as "UTC"."""

    @abstractmethod
    async def get_user(self, user_id: int) -> User:
        """Return a user by id or raise NotFoundError."""

    @abstractmethod
    async def get_user_by_telegram_id(self, telegram_user_id: int) -> User:
        """Return the user bound to a Telegram account or raise NotFoundError."""

    @abstractmethod
    async def list_users(self) -> List[User]:
        """Return all users ordered by id."""

    # --- tasks ---

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        """Persist a task; raises NotFoundError if the owner does not exist."""

    @abstractmethod
    async def get_task(self, task_id: int) -> Task:
        """Return a task by id or raise NotFoundError."""

    @abstractmethod
    async def list_tasks(self, user_id: int, status: Optional[TaskStatus] = None) -> List[Task]:
        """Return a user's tasks ordered by id, optionally filtered by status."""

    async def list_active(self, user_id: int) -> List[Task]:
        return await self.list_tasks(user_id, TaskStatus.active)

    @abstractmethod
    async def mark_done(self, task_id: int) -> Task:
        """Set status to done."""

    @abstractmethod
    async def delete_task(self, task_id: int) -> None:
        """Remove a task or raise NotFoundError."""

    @abstractmethod
    async def set_due(self, task_id: int, due_at: Optional[datetime]) -> Task:
        """Set or clear the due instant."""

    @abstractmethod
    async def set_remind(self, task_id: int, remind_at: Optional[datetime]) -> Task:
        """Set or clear the reminder instant. Always clears notified_at."""

    @abstractmethod
    async def update_task(self, task_id: int, **changes) -> Task:
        """Apply a partial update of text/status/due_at/remind_at.

        A change that includes remind_at clears notified_at.
        """

    @abstractmethod
    async def list_due_for_notify(self, now: datetime) -> List[Task]:
        """Claim every active task whose reminder is due and not yet notified.

        Selection and marking (notified_at = now) happen in one atomic step,
        so a claimed task is never returned again by this or a concurrent call.
        """

    async def init_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None


def check_task_changes(changes: dict) -> None:
    unknown = set(changes) - UPDATABLE_TASK_FIELDS
    if unknown:
        raise ValueError(f"unsupported task fields: {sorted(unknown)}")


def build_repository(settings: "Settings") -> Repository:
    """Return the repository selected by STORAGE (memory by default)."""
    backend = settings.storage_backend
    if backend != (settings.STORAGE or "").strip().lower():
        logger.warning("Unsupported STORAGE=%r, falling back to memory", settings.STORAGE)
    if backend == "sql":
        from common.sql_store import SqlRepository

        logger.info("Using SQL repository")
        return SqlRepository.from_url(settings.DATABASE_URL)

    from common.memory_store import MemoryRepository

    logger.info("Using in-memory repository")
    return MemoryRepository()
