from sqlalchemy import (
    BigInteger, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text
)
from sqlalchemy.orm import declarative_base

from common.domain import TaskStatus, utc_now

Base = declarative_base()

# BIGINT ids, but sqlite only autoincrements a plain INTEGER primary key.
_Id = BigInteger().with_variant(Integer, "sqlite")


class UserModel(Base):
    __tablename__ = "users"

    id = Column(_Id, primary_key=True, autoincrement=True)
    telegram_user_id = Column(BigInteger, nullable=False, unique=True)
    chat_id = Column(BigInteger, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class TaskModel(Base):
    __tablename__ = "tasks"

    id = Column(_Id, primary_key=True, autoincrement=True)
    user_id = Column(_Id, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    text = Column(Text, nullable=False)
    status = Column(Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.active)
    due_at = Column(DateTime(timezone=True), nullable=True)
    remind_at = Column(DateTime(timezone=True), nullable=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_tasks_user_status", "user_id", "status"),
        Index("idx_tasks_remind_pending", "status", "remind_at", "notified_at"),
    )
