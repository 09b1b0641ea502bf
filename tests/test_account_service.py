import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeDirectory, FakeLLM
from frontdesk.schemas.conversation import user_turn
from frontdesk.schemas.ticket import ResidentIdentity
from frontdesk.services.account_service import (
    AccountResolver,
    HttpResidentDirectory,
    format_account_message,
    mentions_account,
)
from frontdesk.services.conversation_service import ConversationSession

CHAT = "79991234567@c.us"
IDENTITY = ResidentIdentity(
    account_number="1002003004",
    full_name="Иванов Иван Иванович",
    apartment_number="12",
    address="ул. Ленина, 5",
)
TURNS = [user_turn("Подскажите номер лицевого счёта. Иванов Иван, Ленина 5 кв 12")]


class TestMentionsAccount:
    @pytest.mark.parametrize(
        "text",
        ["Какой у меня лицевой счёт?", "подскажите л/с", "нужен ЛС", "Номер счёта скажите"],
    )
    def test_account_questions(self, text):
        assert mentions_account(text) is True

    @pytest.mark.parametrize("text", ["Течёт кран", "слесарь", "", "класс"])
    def test_other_messages(self, text):
        assert mentions_account(text) is False


class TestFormatAccountMessage:
    def test_contains_number_and_address(self):
        text = format_account_message(IDENTITY)
        assert "*1002003004*" in text
        assert "Ленина" in text
        assert "Квартира: 12" in text


class TestAccountResolver:
    def test_resolves_and_caches_identity(self):
        directory = FakeDirectory({("Иванов Иван", "Ленина 5 кв 12"): IDENTITY})
        llm = FakeLLM(account_extraction={"full_name": "Иванов Иван", "address": "Ленина 5 кв 12"})
        resolver = AccountResolver(llm, directory, identity_ttl_seconds=3600)
        session = ConversationSession(conversation_id=CHAT)

        first = asyncio.run(resolver.resolve(session, TURNS))
        second = asyncio.run(resolver.resolve(session, TURNS))

        assert first.handled is True
        assert "1002003004" in first.message
        assert second.identity == IDENTITY
        assert len(directory.lookups) == 1
        assert len(llm.calls) == 1

    def test_cache_expires(self):
        session = ConversationSession(conversation_id=CHAT)
        now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        session.remember_identity(IDENTITY, 60, now=now)

        assert session.cached_identity(now + timedelta(seconds=30)) == IDENTITY
        assert session.cached_identity(now + timedelta(seconds=61)) is None

    def test_missing_address_not_handled(self):
        directory = FakeDirectory()
        llm = FakeLLM(account_extraction={"full_name": "Иванов Иван", "address": None})
        resolver = AccountResolver(llm, directory, identity_ttl_seconds=3600)

        result = asyncio.run(resolver.resolve(ConversationSession(conversation_id=CHAT), TURNS))

        assert result.handled is False
        assert directory.lookups == []

    def test_not_found_not_handled(self):
        llm = FakeLLM(account_extraction={"full_name": "Сидоров Сидор", "address": "Мира 1"})
        resolver = AccountResolver(llm, FakeDirectory(), identity_ttl_seconds=3600)
        assert asyncio.run(resolver.resolve(ConversationSession(conversation_id=CHAT), TURNS)).handled is False

    def test_directory_error_not_handled(self):
        llm = FakeLLM(account_extraction={"full_name": "Иванов Иван", "address": "Ленина 5 кв 12"})
        resolver = AccountResolver(llm, FakeDirectory(error=ConnectionError("down")), identity_ttl_seconds=3600)
        assert asyncio.run(resolver.resolve(ConversationSession(conversation_id=CHAT), TURNS)).handled is False

    def test_without_directory_not_handled(self):
        llm = FakeLLM()
        resolver = AccountResolver(llm, None, identity_ttl_seconds=3600)
        assert asyncio.run(resolver.resolve(ConversationSession(conversation_id=CHAT), TURNS)).handled is False
        assert llm.calls == []


class TestHttpResidentDirectory:
    def _directory(self, handler):
        return HttpResidentDirectory("http://directory.local/", token="secret", transport=httpx.MockTransport(handler))

    def test_single_match(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json=[{"accountNumber": 1002003004, "fullName": "Иванов Иван Иванович", "apartmentNumber": "12"}],
            )

        identity = asyncio.run(self._directory(handler).lookup("Иванов Иван", "Ленина 5 кв 12"))

        assert identity.account_number == "1002003004"
        assert identity.apartment_number == "12"
        assert seen["auth"] == "Bearer secret"
        assert seen["params"] == {"full_name": "Иванов Иван", "address": "Ленина 5 кв 12"}

    def test_ambiguous_match(self):
        def handler(request):
            return httpx.Response(200, json=[{"accountNumber": "1"}, {"accountNumber": "2"}])

        assert asyncio.run(self._directory(handler).lookup("Иванов Иван", "Ленина 5")) is None

    def test_not_found(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "not found"})

        assert asyncio.run(self._directory(handler).lookup("Иванов Иван", "Ленина 5")) is None

    def test_server_error_raises(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(self._directory(handler).lookup("Иванов Иван", "Ленина 5"))
