import logging
from typing import List, Optional, Protocol

from common.commands import (
    HELP_TEXT, CommandArgumentError, format_local, parse_add_args, parse_command, parse_due_args, parse_id_arg
)
from common.domain import Task, User
from common.repository import NotFoundError, Repository
from common.tasks import InvalidTextError, TaskService
from common.telegram import Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"

MSG_GENERIC_ERROR = "Something went wrong, please try again."
MSG_TASK_NOT_FOUND = "Task not found."
MSG_UNKNOWN_COMMAND = "Unknown command. /start shows help."
MSG_ADD_USAGE = "Usage: /add <text> [YYYY-MM-DD HH:MM]"
MSG_ADD_EMPTY = "Task text is empty, please write something."
MSG_ADD_FAILED = "Could not add the task."
MSG_LIST_FAILED = "Could not load your tasks."
MSG_LIST_EMPTY = "Nothing here yet. Add a task with /add."
MSG_DONE_USAGE = "Usage: /done <id>"
MSG_DONE_FAILED = "Could not complete the task."
MSG_DEL_USAGE = "Usage: /del <id>"
MSG_DEL_FAILED = "Could not delete the task."
MSG_DUE_USAGE = "Usage: /due <id> <YYYY-MM-DD HH:MM>"
MSG_DUE_FAILED = "Could not set the due date."
MSG_DUE_REMIND_FAILED = "Due date saved, but the reminder was not updated."


class MessageSender(Protocol):
    async def send_message(self, chat_id: int, text: str) -> dict: ...


def format_task_list(items: List[Task]) -> str:
    if not items:
        return MSG_LIST_EMPTY
    lines = ["Active tasks:"]
    for task in items:
        line = f"{task.id}) {task.text}"
        if task.due_at is not None:
            line += f" — due {format_local(task.due_at)}"
        lines.append(line)
    return "\n".join(lines)


class Dispatcher:
    """Turns one inbound chat message into task operations and one reply."""

    def __init__(self, sender: MessageSender, service: TaskService, users: Repository):
        self.sender = sender
        self.service = service
        self.users = users

    async def handle_message(self, message: Message) -> None:
        if not message.text or message.from_user is None:
            return
        command, args = parse_command(message.text)
        if not command:
            return

        chat_id = message.chat.id
        try:
            user = await self._ensure_user(message)
        except Exception:
            await self.sender.send_message(chat_id, MSG_GENERIC_ERROR)
            raise

        reply = await self._dispatch(command, args, user)
        await self.sender.send_message(chat_id, reply)

    async def _ensure_user(self, message: Message) -> User:
        telegram_user_id = message.from_user.id
        try:
            return await self.users.get_user_by_telegram_id(telegram_user_id)
        except NotFoundError:
            pass
        user = await self.users.create_user(User(
            telegram_user_id=telegram_user_id,
            chat_id=message.chat.id,
            timezone=DEFAULT_TIMEZONE,
        ))
        logger.info("Provisioned user %s for telegram id %s", user.id, telegram_user_id)
        return user

    async def _owns_task(self, task_id: int, user: User, tz: str) -> bool:
        # Absence and foreign ownership look the same to the caller.
        try:
            task = await self.service.get_task(task_id, tz)
        except NotFoundError:
            return False
        return task.user_id == user.id

    async def _dispatch(self, command: str, args: str, user: User) -> str:
        tz = user.timezone or DEFAULT_TIMEZONE
        if command == "start":
            return HELP_TEXT
        if command == "add":
            return await self._add(args, user, tz)
        if command == "list":
            return await self._list(user, tz)
        if command == "done":
            return await self._done(args, user, tz)
        if command == "del":
            return await self._delete(args, user, tz)
        if command == "due":
            return await self._due(args, user, tz)
        return MSG_UNKNOWN_COMMAND

    async def _add(self, args: str, user: User, tz: str) -> str:
        try:
            text, due_at = parse_add_args(args, tz)
        except CommandArgumentError:
            return MSG_ADD_USAGE
        try:
            task = await self.service.create(user.id, text, due_at, due_at, tz)
        except InvalidTextError:
            return MSG_ADD_EMPTY
        except Exception as e:
            logger.error(f"Failed to add task for user {user.id}: {e}")
            return MSG_ADD_FAILED
        reply = f"Added task #{task.id}."
        if task.due_at is not None:
            reply += f" Due {format_local(task.due_at)}."
        return reply

    async def _list(self, user: User, tz: str) -> str:
        try:
            items = await self.service.list_active(user.id, tz)
        except Exception as e:
            logger.error(f"Failed to list tasks for user {user.id}: {e}")
            return MSG_LIST_FAILED
        return format_task_list(items)

    async def _done(self, args: str, user: User, tz: str) -> str:
        try:
            task_id = parse_id_arg(args)
        except CommandArgumentError:
            return MSG_DONE_USAGE
        try:
            if not await self._owns_task(task_id, user, tz):
                return MSG_TASK_NOT_FOUND
            task = await self.service.mark_done(task_id, tz)
        except NotFoundError:
            return MSG_TASK_NOT_FOUND
        except Exception as e:
            logger.error(f"Failed to complete task {task_id}: {e}")
            return MSG_DONE_FAILED
        return f"Done, task #{task.id} closed."

    async def _delete(self, args: str, user: User, tz: str) -> str:
        try:
            task_id = parse_id_arg(args)
        except CommandArgumentError:
            return MSG_DEL_USAGE
        try:
            if not await self._owns_task(task_id, user, tz):
                return MSG_TASK_NOT_FOUND
            await self.service.delete(task_id)
        except NotFoundError:
            return MSG_TASK_NOT_FOUND
        except Exception as e:
            logger.error(f"Failed to delete task {task_id}: {e}")
            return MSG_DEL_FAILED
        return f"Deleted task #{task_id}."

    async def _due(self, args: str, user: User, tz: str) -> str:
        try:
            task_id, due_at = parse_due_args(args, tz)
        except CommandArgumentError:
            return MSG_DUE_USAGE
        try:
            if not await self._owns_task(task_id, user, tz):
                return MSG_TASK_NOT_FOUND
            task = await self.service.set_due(task_id, due_at, tz)
        except NotFoundError:
            return MSG_TASK_NOT_FOUND
        except Exception as e:
            logger.error(f"Failed to set due date for task {task_id}: {e}")
            return MSG_DUE_FAILED
        # Not atomic with set_due: a failure here leaves the old reminder in place.
        try:
            await self.service.set_remind(task_id, due_at, tz)
        except Exception as e:
            logger.error(f"Failed to re-arm reminder for task {task_id}: {e}")
            return MSG_DUE_REMIND_FAILED
        return f"Due date for #{task.id}: {format_local(task.due_at)}."


def build_dispatcher(sender: MessageSender, repo: Repository, service: Optional[TaskService] = None) -> Dispatcher:
    return Dispatcher(sender, service or TaskService(repo), repo)
