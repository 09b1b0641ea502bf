import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn
from frontdesk.schemas.ticket import ResidentIdentity
from frontdesk.services.ai_service import ask_json, normalize_for_matching, render_transcript
from frontdesk.services.conversation_service import ConversationSession
from frontdesk.services.llm import LLMProvider

logger = get_logger("account_service")

ACCOUNT_PATTERNS = (
    re.compile(r"\bлицев\w*"),
    re.compile(r"(?<!\w)л\s*/\s*с(?!\w)"),
    re.compile(r"\bлс\b"),
    re.compile(r"\bномер\w*\s+сч[её]т\w*"),
)

ACCOUNT_EXTRACTION_PROMPT = """Житель хочет узнать номер лицевого счёта. Извлеки из переписки его ФИО и адрес.
Если чего-то нет — null. Ничего не придумывай.

Переписка:
{transcript}

Верни JSON: {{"full_name": "ФИО или null", "address": "адрес с квартирой или null"}}"""


def mentions_account(text: str) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in ACCOUNT_PATTERNS)


def format_account_message(identity: ResidentIdentity) -> str:
    lines = [f"Номер вашего лицевого счёта: *{identity.account_number}*", f"ФИО: {identity.full_name}"]
    if identity.address:
        lines.append(f"Адрес: {identity.address}")
    if identity.apartment_number:
        lines.append(f"Квартира: {identity.apartment_number}")
    return "\n".join(lines)


class ResidentDirectory(ABC):
    """Resident lookup with fuzzy matching on its side."""

    @abstractmethod
    async def lookup(self, full_name: str, address: str) -> Optional[ResidentIdentity]:
        """Return the single matching resident, or None when absent or ambiguous."""
        pass


class HttpResidentDirectory(ResidentDirectory):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def lookup(self, full_name: str, address: str) -> Optional[ResidentIdentity]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(
                f"{self.base_url}/residents/lookup",
                params={"full_name": full_name, "address": address},
                headers=headers,
            )
        if response.status_code == 404:
            return None
        response.raise_for_status()

        data = response.json()
        if isinstance(data, list):
            if len(data) != 1:
                logger.info(f"Directory lookup ambiguous: {len(data)} matches")
                return None
            data = data[0]
        if not data or not data.get("accountNumber"):
            return None
        return ResidentIdentity(
            account_number=str(data["accountNumber"]),
            full_name=data.get("fullName") or full_name,
            apartment_number=data.get("apartmentNumber"),
            address=data.get("address"),
        )


@dataclass
class AccountResolution:
    handled: bool
    message: Optional[str] = None
    identity: Optional[ResidentIdentity] = None


NOT_HANDLED = AccountResolution(handled=False)


class AccountResolver:
    """Answers account-number questions directly when name and address are known."""

    def __init__(self, llm: LLMProvider, directory: Optional[ResidentDirectory], identity_ttl_seconds: float):
        self.llm = llm
        self.directory = directory
        self.identity_ttl_seconds = identity_ttl_seconds

    async def resolve(self, session: ConversationSession, turns: Sequence[Turn]) -> AccountResolution:
        cached = session.cached_identity()
        if cached is not None:
            return AccountResolution(handled=True, message=format_account_message(cached), identity=cached)

        if self.directory is None:
            logger.warning("Resident directory is not configured")
            return NOT_HANDLED

        extracted = await ask_json(
            self.llm,
            "account_extraction",
            ACCOUNT_EXTRACTION_PROMPT.format(transcript=render_transcript(turns)),
        )
        full_name = _clean(extracted, "full_name")
        address = _clean(extracted, "address")
        if not full_name or not address:
            logger.info(
                "Account lookup needs more data",
                extra={
                    "context": {
                        "conversation_id": session.conversation_id,
                        "has_name": bool(full_name),
                        "has_address": bool(address),
                    }
                },
            )
            return NOT_HANDLED

        try:
            identity = await self.directory.lookup(full_name, address)
        except Exception as exc:
            logger.error(
                "Resident directory lookup failed",
                extra={"context": {"conversation_id": session.conversation_id, "error": str(exc)}},
            )
            return NOT_HANDLED

        if identity is None:
            logger.info("Resident not found", extra={"context": {"conversation_id": session.conversation_id}})
            return NOT_HANDLED

        session.remember_identity(identity, self.identity_ttl_seconds)
        logger.info("Resident resolved", extra={"context": {"conversation_id": session.conversation_id}})
        return AccountResolution(handled=True, message=format_account_message(identity), identity=identity)


def _clean(payload: Optional[dict], field: str) -> Optional[str]:
    if not payload:
        return None
    value = payload.get(field)
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() == "null":
        return None
    return value
