from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime
from common.domain import MAX_ID, TaskStatus


class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    telegram_user_id: int
    chat_id: int
    timezone: str = "UTC"

    @field_validator("telegram_user_id", "chat_id")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("must be non-zero")
        return v


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    telegram_user_id: int
    chat_id: int
    timezone: str
    created_at: datetime


class UserList(BaseModel):
    items: List[UserOut]


class TaskCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int = Field(..., gt=0, le=MAX_ID)
    text: str
    status: TaskStatus = TaskStatus.active
    due_at: Optional[AwareDatetime] = None
    remind_at: Optional[AwareDatetime] = None


class TaskUpdate(BaseModel):
    """Partial update; an explicit null clears due_at/remind_at."""

    model_config = ConfigDict(extra="forbid")

    text: Optional[str] = None
    status: Optional[TaskStatus] = None
    due_at: Optional[AwareDatetime] = None
    remind_at: Optional[AwareDatetime] = None


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    text: str
    status: TaskStatus
    due_at: Optional[datetime] = None
    remind_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TaskList(BaseModel):
    items: List[TaskOut]
