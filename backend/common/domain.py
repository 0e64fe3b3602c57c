from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# Largest id a BIGINT column can hold.
MAX_ID = 2**63 - 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    active = "active"
    done = "done"


@dataclass
class Task:
    """A reminder/task owned by exactly one user.

    Instants are stored in UTC. Anything handed back to a caller by the
    lifecycle service has been projected into that caller's timezone.
    """

    user_id: int
    text: str
    status: TaskStatus = TaskStatus.active
    due_at: Optional[datetime] = None
    remind_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    id: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class User:
    telegram_user_id: int
    chat_id: int
    timezone: str = "UTC"
    id: int = 0
    created_at: datetime = field(default_factory=utc_now)
