import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from frontdesk.logging_config import get_logger

logger = get_logger("transport")

PERSONAL_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"
STATUS_BROADCAST = "status@broadcast"


@dataclass
class ChatInfo:
    chat_id: str
    name: Optional[str] = None
    is_group: bool = False


class WhatsAppTransport(ABC):
    """Outbound half of the chat client. Implementations never raise."""

    @abstractmethod
    async def send(self, destination: str, content: str) -> bool:
        pass

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[ChatInfo]:
        pass

    @abstractmethod
    async def send_typing(self, chat_id: str) -> None:
        pass

    @abstractmethod
    async def clear_typing(self, chat_id: str) -> None:
        pass


def phone_from_chat_id(chat_id: str) -> str:
    """'79991234567@c.us' -> '79991234567'."""
    return (chat_id or "").split("@", 1)[0]


def chat_id_from_phone(phone: str) -> Optional[str]:
    """Digits of a phone number as a personal chat id; 8XXXXXXXXXX becomes 7XXXXXXXXXX."""
    if not phone:
        return None
    if phone.endswith(PERSONAL_SUFFIX):
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    if len(digits) < 10:
        return None
    return f"{digits}{PERSONAL_SUFFIX}"


def is_group_chat_id(chat_id: str) -> bool:
    return (chat_id or "").endswith(GROUP_SUFFIX)


def format_for_whatsapp(text: str) -> str:
    """Markdown from the LLM to WhatsApp markup."""
    if not text:
        return ""
    formatted = re.sub(r"\*\*(.+?)\*\*", r"*\1*", text)
    formatted = re.sub(r"__(.+?)__", r"_\1_", formatted)
    formatted = re.sub(r"^\s*#{1,6}\s+", "", formatted, flags=re.MULTILINE)
    formatted = re.sub(r"\n{3,}", "\n\n", formatted)
    return formatted.strip()


class HttpWhatsAppTransport(WhatsAppTransport):
    """WhatsApp gateway reached over HTTP with a bearer token."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _post(self, path: str, payload: dict) -> Optional[httpx.Response]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                return await client.post(f"{self.base_url}{path}", headers=self._headers(), json=payload)
        except Exception as e:
            logger.error(f"Gateway request {path} failed: {e}")
            return None

    async def send(self, destination: str, content: str) -> bool:
        if not destination or not content:
            logger.warning(f"send: missing destination={destination!r} or content")
            return False
        response = await self._post("/send", {"chatId": destination, "body": content})
        if response is None:
            return False
        logger.info(f"Gateway send: status={response.status_code}, chat={destination}")
        return response.is_success

    async def get_chat(self, chat_id: str) -> Optional[ChatInfo]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/chats/{chat_id}", headers=self._headers())
        except Exception as e:
            logger.error(f"Gateway get_chat failed: {e}")
            return None
        if response.status_code != 200:
            return None
        data = response.json()
        return ChatInfo(
            chat_id=data.get("id", chat_id),
            name=data.get("name"),
            is_group=bool(data.get("isGroup", is_group_chat_id(chat_id))),
        )

    async def send_typing(self, chat_id: str) -> None:
        await self._post("/typing", {"chatId": chat_id, "state": "typing"})

    async def clear_typing(self, chat_id: str) -> None:
        await self._post("/typing", {"chatId": chat_id, "state": "paused"})
