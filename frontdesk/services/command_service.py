import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from frontdesk.logging_config import get_logger
from frontdesk.services.mute_service import MuteRegistry
from frontdesk.services.transport import chat_id_from_phone

logger = get_logger("command_service")

FOREVER_TOKENS = {"forever", "навсегда", "inf"}
DURATION_RE = re.compile(r"^(\d+)\s*([mhdмчд])$")
DURATION_UNITS = {
    "m": "minutes",
    "м": "minutes",
    "h": "hours",
    "ч": "hours",
    "d": "days",
    "д": "days",
}

HELP_TEXT = (
    "Команды администратора:\n"
    "/mute <телефон> [30m|2h|1d|forever] — выключить бота для жителя (по умолчанию на {default})\n"
    "/unmute <телефон> — снова включить бота\n"
    "/status <телефон> — проверить, выключен ли бот\n"
    "/help — эта справка"
)


class CommandError(ValueError):
    pass


@dataclass
class AdminCommand:
    name: str
    conversation_id: Optional[str] = None
    duration: Optional[timedelta] = None
    forever: bool = False


def parse_duration(token: str) -> Optional[timedelta]:
    """'30m', '2h', '1d' -> timedelta; 'forever' -> None."""
    token = token.strip().lower()
    if token in FOREVER_TOKENS:
        return None
    match = DURATION_RE.match(token)
    if not match:
        raise CommandError(f"Не понял длительность: {token}")
    amount = int(match.group(1))
    if amount <= 0:
        raise CommandError("Длительность должна быть больше нуля")
    return timedelta(**{DURATION_UNITS[match.group(2)]: amount})


def parse_command(text: str, default_mute: timedelta) -> Optional[AdminCommand]:
    """Parse an admin command. Returns None for anything that is not a command."""
    parts = (text or "").strip().split()
    if not parts or not parts[0].startswith("/"):
        return None
    name = parts[0][1:].lower()
    args = parts[1:]

    if name == "help":
        return AdminCommand(name="help")
    if name not in {"mute", "unmute", "status"}:
        raise CommandError(f"Неизвестная команда: /{name}")
    if not args:
        raise CommandError(f"Укажите телефон: /{name} <телефон>")

    conversation_id = chat_id_from_phone(args[0])
    if conversation_id is None:
        raise CommandError(f"Не похоже на номер телефона: {args[0]}")

    if name != "mute":
        return AdminCommand(name=name, conversation_id=conversation_id)

    if len(args) > 1:
        duration = parse_duration(args[1])
        return AdminCommand(name=name, conversation_id=conversation_id, duration=duration, forever=duration is None)
    return AdminCommand(name=name, conversation_id=conversation_id, duration=default_mute)


def _describe_duration(duration: timedelta) -> str:
    minutes = int(duration.total_seconds() // 60)
    if minutes % (60 * 24) == 0:
        return f"{minutes // (60 * 24)} д"
    if minutes % 60 == 0:
        return f"{minutes // 60} ч"
    return f"{minutes} мин"


class CommandHandler:
    """Admin text commands acting on the mute registry."""

    def __init__(
        self,
        mutes: MuteRegistry,
        preempt: Callable[[str], Any],
        default_mute_hours: float = 24,
    ):
        self.mutes = mutes
        self.preempt = preempt
        self.default_mute = timedelta(hours=default_mute_hours)

    def is_command(self, text: str) -> bool:
        return bool(text) and text.strip().startswith("/")

    async def execute(self, text: str) -> Optional[str]:
        """Run a command and return the reply for the admin chat."""
        try:
            command = parse_command(text, self.default_mute)
        except CommandError as exc:
            return str(exc)
        if command is None:
            return None

        logger.info(
            "Admin command",
            extra={"context": {"command": command.name, "conversation_id": command.conversation_id}},
        )

        if command.name == "help":
            return HELP_TEXT.format(default=_describe_duration(self.default_mute))

        phone = command.conversation_id.split("@", 1)[0]

        if command.name == "mute":
            self.preempt(command.conversation_id)
            entry = await self.mutes.mute(command.conversation_id, command.duration, reason="admin_command")
            if entry.until is None:
                return f"Бот выключен для +{phone} до ручного включения."
            return f"Бот выключен для +{phone} на {_describe_duration(command.duration)}."

        if command.name == "unmute":
            if await self.mutes.unmute(command.conversation_id):
                return f"Бот снова отвечает +{phone}."
            return f"Для +{phone} бот и так включён."

        entry = await self.mutes.get(command.conversation_id)
        if entry is None:
            return f"+{phone}: бот включён."
        if entry.until is None:
            return f"+{phone}: бот выключен бессрочно."
        return f"+{phone}: бот выключен до {entry.until.strftime('%d.%m.%Y %H:%M')} UTC."
