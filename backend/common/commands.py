from datetime import datetime
from typing import Optional, Tuple

from common.domain import MAX_ID
from common.timezones import resolve_timezone

DATE_TIME_FORMAT = "%Y-%m-%d %H:%M"

HELP_TEXT = "\n".join([
    "Commands:",
    "/start - show this help",
    "/add <text> [YYYY-MM-DD HH:MM] - add a task",
    "/list - active tasks",
    "/done <id> - mark a task as done",
    "/del <id> - delete a task",
    "/due <id> <YYYY-MM-DD HH:MM> - set due date and reminder",
])


class CommandArgumentError(ValueError):
    """Command arguments do not match the command's grammar."""


def parse_command(text: str) -> Tuple[str, str]:
    """
    Split "/cmd@botname args" into ("cmd", "args").
    Returns ("", "") when the text is not a command.
    """
    trimmed = (text or "").strip()
    if not trimmed.startswith("/"):
        return "", ""
    parts = trimmed.split(maxsplit=1)
    command = parts[0][1:].split("@", 1)[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""
    return command, args


def _digits_with_separators(value: str, length: int, separators: dict) -> bool:
    if len(value) != length:
        return False
    for idx, ch in enumerate(value):
        if idx in separators:
            if ch != separators[idx]:
                return False
        elif not ("0" <= ch <= "9"):
            return False
    return True


def looks_like_date(value: str) -> bool:
    return _digits_with_separators(value, 10, {4: "-", 7: "-"})


def looks_like_time(value: str) -> bool:
    return _digits_with_separators(value, 5, {2: ":"})


def parse_local_datetime(date_part: str, time_part: str, tz: str) -> datetime:
    """Interpret "YYYY-MM-DD" + "HH:MM" as wall-clock time in tz."""
    loc = resolve_timezone(tz)
    try:
        naive = datetime.strptime(f"{date_part} {time_part}", DATE_TIME_FORMAT)
    except ValueError as e:
        raise CommandArgumentError(str(e)) from e
    return naive.replace(tzinfo=loc)


def parse_add_args(args: str, tz: str) -> Tuple[str, Optional[datetime]]:
    """
    "/add buy milk 2026-01-02 10:00" -> ("buy milk", 2026-01-02 10:00 in tz).
    Without a trailing date/time pair the whole string is the task text.
    """
    args = (args or "").strip()
    if not args:
        raise CommandArgumentError("empty")
    fields = args.split()
    if len(fields) >= 2 and looks_like_date(fields[-2]) and looks_like_time(fields[-1]):
        when = parse_local_datetime(fields[-2], fields[-1], tz)
        # Empty leading text is left for the service to reject.
        return " ".join(fields[:-2]), when
    return args, None


def parse_id_arg(args: str) -> int:
    value = (args or "").strip()
    if not (value.isascii() and value.isdigit()):
        raise CommandArgumentError("id")
    task_id = int(value)
    if task_id <= 0 or task_id > MAX_ID:
        raise CommandArgumentError("id")
    return task_id


def parse_due_args(args: str, tz: str) -> Tuple[int, datetime]:
    fields = (args or "").split()
    if len(fields) < 3:
        raise CommandArgumentError("invalid")
    task_id = parse_id_arg(fields[0])
    if not (looks_like_date(fields[1]) and looks_like_time(fields[2])):
        raise CommandArgumentError("date/time")
    return task_id, parse_local_datetime(fields[1], fields[2], tz)


def format_local(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime(DATE_TIME_FORMAT)
