import json
from typing import Dict, List, Optional

import pytest

from frontdesk.config import BUILTIN_PERSONAS, Settings
from frontdesk.schemas.ticket import ResidentIdentity
from frontdesk.schemas.webhook import WhatsAppEvent
from frontdesk.services.account_service import ResidentDirectory
from frontdesk.services.conversation_store import ConversationStore
from frontdesk.services.llm import LLMProvider, LLMResponse
from frontdesk.services.mute_service import MuteRegistry
from frontdesk.services.pipeline import FrontDeskPipeline
from frontdesk.services.storage import InMemoryKeyValueStore
from frontdesk.services.transport import ChatInfo, WhatsAppTransport

RESIDENT_CHAT = "79991234567@c.us"


class FakeLLM(LLMProvider):
    """Responses scripted per call purpose.

    Each purpose holds a queue; the last entry is reused once the queue is
    down to one. Exceptions in the queue are raised. Unscripted purposes
    raise RuntimeError, which callers treat as an LLM failure.
    """

    def __init__(self, **responses):
        self.responses: Dict[str, list] = {}
        self.calls: List[dict] = []
        for purpose, value in responses.items():
            self.script(purpose, value)

    def script(self, purpose: str, *values) -> "FakeLLM":
        self.responses[purpose] = list(values)
        return self

    def purposes(self) -> List[str]:
        return [call["purpose"] for call in self.calls]

    def calls_for(self, purpose: str) -> List[dict]:
        return [call for call in self.calls if call["purpose"] == purpose]

    async def generate(
        self,
        messages: List[dict],
        *,
        purpose: str = "reply",
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 600,
        timeout_seconds: Optional[float] = None,
        json_output: bool = False,
    ) -> LLMResponse:
        self.calls.append({"purpose": purpose, "messages": messages, "json_output": json_output})
        queue = self.responses.get(purpose)
        if not queue:
            raise RuntimeError(f"No scripted response for {purpose}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            item = json.dumps(item, ensure_ascii=False)
        return LLMResponse(content=item, model="fake")


class FakeTransport(WhatsAppTransport):
    def __init__(self, failing: Optional[set] = None):
        self.sent: List[tuple] = []
        self.typing: List[tuple] = []
        self.failing = set(failing or ())

    def sent_to(self, destination: str) -> List[str]:
        return [content for dest, content in self.sent if dest == destination]

    async def send(self, destination: str, content: str) -> bool:
        if destination in self.failing:
            return False
        self.sent.append((destination, content))
        return True

    async def get_chat(self, chat_id: str) -> Optional[ChatInfo]:
        return ChatInfo(chat_id=chat_id)

    async def send_typing(self, chat_id: str) -> None:
        self.typing.append((chat_id, "typing"))

    async def clear_typing(self, chat_id: str) -> None:
        self.typing.append((chat_id, "paused"))


class FakeDirectory(ResidentDirectory):
    def __init__(self, residents: Optional[Dict[tuple, ResidentIdentity]] = None, error: Optional[Exception] = None):
        self.residents = residents or {}
        self.error = error
        self.lookups: List[tuple] = []

    async def lookup(self, full_name: str, address: str) -> Optional[ResidentIdentity]:
        self.lookups.append((full_name, address))
        if self.error is not None:
            raise self.error
        return self.residents.get((full_name, address))


def make_event(body: str, sender: str = RESIDENT_CHAT, **fields) -> WhatsAppEvent:
    return WhatsAppEvent.model_validate({"from": sender, "body": body, **fields})


def make_own_event(body: str, to: str = RESIDENT_CHAT, **fields) -> WhatsAppEvent:
    return WhatsAppEvent.model_validate({"from": "79990000000@c.us", "to": to, "body": body, "fromMe": True, **fields})


def make_settings(**overrides) -> Settings:
    values = {
        "storage_backend": "memory",
        "debounce_seconds": 0.05,
        "typing_max_seconds": 0,
        "operator_echo_grace_seconds": 0.05,
        "operator_echo_poll_seconds": 0.01,
        "sweep_worker_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_pipeline(
    llm: Optional[FakeLLM] = None,
    transport: Optional[FakeTransport] = None,
    directory: Optional[ResidentDirectory] = None,
    persona_key: str = "admin",
    **overrides,
) -> FrontDeskPipeline:
    config = make_settings(**overrides)
    storage = InMemoryKeyValueStore()
    return FrontDeskPipeline(
        persona=BUILTIN_PERSONAS[persona_key],
        llm=llm or FakeLLM(),
        transport=transport or FakeTransport(),
        store=ConversationStore(storage, max_turns=config.history_max_turns, keep_recent=config.history_keep_recent),
        mutes=MuteRegistry(storage),
        directory=directory,
        config=config,
    )


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def memory_storage():
    return InMemoryKeyValueStore()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("BOT_INSTANCE", "admin")
