import asyncio
from datetime import datetime, timezone

import httpx

from conftest import FakeLLM
from frontdesk.schemas.conversation import user_turn
from frontdesk.schemas.ticket import DedupRecord, RoutingCategory, TicketPayload
from frontdesk.services.intent_service import (
    GENERIC_CLARIFY_QUESTION,
    MAX_CLARIFYING_QUESTIONS,
    NAME_QUESTION,
    ConfirmationIntent,
    check_completeness,
    classify_confirmation,
    classify_confirmation_by_keywords,
    classify_routing,
    has_full_name,
    insists_on_new_request,
    is_semantic_duplicate,
    is_topic_change,
)

PAYLOAD = TicketPayload(full_name="Иванов Иван", address="ул. Ленина 5, кв. 12", issue="течёт кран на кухне")
TURNS = [user_turn("У меня течёт кран на кухне, Ленина 5 кв 12")]


class TestHasFullName:
    def test_family_and_given_name(self):
        assert has_full_name("Иванов Иван") is True
        assert has_full_name("Петрова-Водкина Анна Сергеевна") is True
        assert has_full_name("Иванов И.") is True

    def test_single_name_is_not_enough(self):
        assert has_full_name("Иван") is False
        assert has_full_name("") is False
        assert has_full_name(None) is False

    def test_digits_do_not_count(self):
        assert has_full_name("Иван 12") is False


class TestClassifyRouting:
    def test_small_talk_skips_llm(self):
        llm = FakeLLM()
        result = asyncio.run(classify_routing(llm, TURNS, "Спасибо большое!"))
        assert result == RoutingCategory.NONE
        assert llm.calls == []

    def test_llm_category(self):
        llm = FakeLLM(routing={"category": "general"})
        assert asyncio.run(classify_routing(llm, TURNS, "течёт кран")) == RoutingCategory.GENERAL
        assert llm.calls[0]["json_output"] is True

    def test_unknown_category_fails_safe(self):
        llm = FakeLLM(routing={"category": "plumbing"})
        assert asyncio.run(classify_routing(llm, TURNS, "течёт кран")) == RoutingCategory.NONE

    def test_timeout_fails_safe(self):
        llm = FakeLLM(routing=httpx.ReadTimeout("slow"))
        assert asyncio.run(classify_routing(llm, TURNS, "течёт кран")) == RoutingCategory.NONE

    def test_malformed_json_fails_safe(self):
        llm = FakeLLM(routing="категория: general")
        assert asyncio.run(classify_routing(llm, TURNS, "течёт кран")) == RoutingCategory.NONE


class TestCheckCompleteness:
    def test_complete(self):
        llm = FakeLLM(completeness={"complete": True, "full_name": "Иванов Иван", "questions": []})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert result.complete is True
        assert result.questions == []
        assert result.full_name == "Иванов Иван"

    def test_given_name_only_is_incomplete_even_if_llm_says_complete(self):
        llm = FakeLLM(completeness={"complete": True, "full_name": "Иван", "questions": []})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert result.complete is False
        assert result.questions == [NAME_QUESTION]
        assert result.full_name is None

    def test_known_name_fills_gap(self):
        llm = FakeLLM(completeness={"complete": True, "full_name": None, "questions": []})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS, known_full_name="Иванов Иван"))
        assert result.complete is True
        assert result.full_name == "Иванов Иван"
        assert "Иванов Иван" in llm.calls[0]["messages"][0]["content"]

    def test_name_question_not_duplicated(self):
        llm = FakeLLM(completeness={"complete": False, "full_name": None, "questions": ["Назовите ваши ФИО"]})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert result.questions == ["Назовите ваши ФИО"]

    def test_questions_are_capped(self):
        questions = [f"вопрос {index}" for index in range(10)]
        llm = FakeLLM(completeness={"complete": False, "full_name": "Иванов Иван", "questions": questions})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert len(result.questions) == MAX_CLARIFYING_QUESTIONS

    def test_single_question_string_is_one_question(self):
        llm = FakeLLM(completeness={"complete": False, "full_name": "Иванов Иван", "questions": "Какой номер квартиры?"})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert result.complete is False
        assert result.questions == ["Какой номер квартиры?"]

    def test_unexpected_questions_shape_asks_generic_question(self):
        llm = FakeLLM(completeness={"complete": False, "full_name": "Иванов Иван", "questions": {"1": "квартира"}})
        result = asyncio.run(check_completeness(llm, RoutingCategory.GENERAL, TURNS))
        assert result.questions == [GENERIC_CLARIFY_QUESTION]

    def test_known_address_goes_into_prompt(self):
        llm = FakeLLM(completeness={"complete": True, "full_name": "Иванов Иван", "questions": []})
        asyncio.run(
            check_completeness(llm, RoutingCategory.GENERAL, TURNS, known_address="ул. Ленина, д. 5, кв. 12")
        )
        assert "ул. Ленина, д. 5, кв. 12" in llm.calls[0]["messages"][0]["content"]

    def test_failure_asks_generic_question(self):
        llm = FakeLLM(completeness=RuntimeError("down"))
        result = asyncio.run(check_completeness(llm, RoutingCategory.ACCOUNTING, TURNS))
        assert result.complete is False
        assert result.questions == [GENERIC_CLARIFY_QUESTION]


class TestConfirmationKeywords:
    def test_plain_yes(self):
        assert classify_confirmation_by_keywords("Да, верно!") == ConfirmationIntent.CONFIRM

    def test_plain_no(self):
        assert classify_confirmation_by_keywords("нет") == ConfirmationIntent.DENY

    def test_yes_with_correction_is_deny(self):
        assert classify_confirmation_by_keywords("да, но квартира 14") == ConfirmationIntent.DENY
        assert classify_confirmation_by_keywords("верно, кроме телефона") == ConfirmationIntent.DENY

    def test_unrelated(self):
        assert classify_confirmation_by_keywords("а когда придёт мастер?") == ConfirmationIntent.NEITHER
        assert classify_confirmation_by_keywords("") == ConfirmationIntent.NEITHER


class TestClassifyConfirmation:
    def test_exact_phrase_skips_llm(self):
        llm = FakeLLM()
        assert asyncio.run(classify_confirmation(llm, "Да, все верно")) == ConfirmationIntent.CONFIRM
        assert asyncio.run(classify_confirmation(llm, "Нет")) == ConfirmationIntent.DENY
        assert llm.calls == []

    def test_llm_decides_compound_reply(self):
        llm = FakeLLM(confirmation={"intent": "deny"})
        assert asyncio.run(classify_confirmation(llm, "да, только адрес Ленина 7")) == ConfirmationIntent.DENY

    def test_llm_failure_falls_back_to_keywords(self):
        llm = FakeLLM(confirmation=RuntimeError("down"))
        assert asyncio.run(classify_confirmation(llm, "да, но квартира 14")) == ConfirmationIntent.DENY
        assert asyncio.run(classify_confirmation(llm, "да, отправляйте пожалуйста")) == ConfirmationIntent.CONFIRM

    def test_unknown_llm_intent_falls_back_to_keywords(self):
        llm = FakeLLM(confirmation={"intent": "maybe"})
        assert asyncio.run(classify_confirmation(llm, "когда придут?")) == ConfirmationIntent.NEITHER


class TestTopicChange:
    def test_llm_answer(self):
        llm = FakeLLM(topic_change={"topic_change": True})
        assert asyncio.run(is_topic_change(llm, PAYLOAD, "а какой у вас график работы?")) is True

    def test_fallback_on_dismissive_phrase(self):
        llm = FakeLLM(topic_change=RuntimeError("down"))
        assert asyncio.run(is_topic_change(llm, PAYLOAD, "не важно, потом")) is True

    def test_fallback_phrase_needs_whole_words(self):
        llm = FakeLLM(topic_change=RuntimeError("down"))
        assert asyncio.run(is_topic_change(llm, PAYLOAD, "потому что кран течёт")) is False


class TestInsist:
    def test_phrase_skips_llm(self):
        llm = FakeLLM()
        assert asyncio.run(insists_on_new_request(llm, "Это другая проблема, создайте новую заявку")) is True
        assert llm.calls == []

    def test_llm_answer(self):
        llm = FakeLLM(insist={"insist": False})
        assert asyncio.run(insists_on_new_request(llm, "кран течёт")) is False

    def test_failure_means_no(self):
        llm = FakeLLM(insist=RuntimeError("down"))
        assert asyncio.run(insists_on_new_request(llm, "кран течёт")) is False


class TestSemanticDuplicate:
    def _record(self):
        return DedupRecord(
            normalized_address="ленина 5 12",
            normalized_issue="течет кран",
            issue="течёт кран",
            ticket_id="#0A1B2C3D",
            category=RoutingCategory.GENERAL,
            created_at=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
        )

    def test_no_recent_tickets_skips_llm(self):
        llm = FakeLLM()
        assert asyncio.run(is_semantic_duplicate(llm, PAYLOAD, [])) is False
        assert llm.calls == []

    def test_llm_answer(self):
        llm = FakeLLM(semantic_duplicate={"duplicate": "true"})
        assert asyncio.run(is_semantic_duplicate(llm, PAYLOAD, [self._record()])) is True
        assert "#0A1B2C3D" in llm.calls[0]["messages"][0]["content"]

    def test_failure_means_not_duplicate(self):
        llm = FakeLLM(semantic_duplicate=RuntimeError("down"))
        assert asyncio.run(is_semantic_duplicate(llm, PAYLOAD, [self._record()])) is False
